"""Client for the technician inventory and activation-signal services."""

import logging

from app.config import settings
from app.schemas.certification import SignalResponse
from app.schemas.field_work import InventorySnapshot, SignalRequest, WorkContext
from app.schemas.inventory import ContractEquipmentRow, EquipmentUnitRow
from app.services.backend_client import BackendClient, BackendClientError

logger = logging.getLogger(__name__)


class InventoryClientError(BackendClientError):
    """Raised when the inventory or signal service fails."""

    pass


class InventoryClient(BackendClient):
    error_class = InventoryClientError

    async def fetch_work_equipment(
        self, context: WorkContext, technician_id: str = ""
    ) -> InventorySnapshot:
        """Contract slots, technician stock, installed and removed units for a work order."""
        data = await self._post(
            "/customer/work/getCustProdInfo",
            {
                "WRKR_ID": technician_id or context.operator_id,
                "SO_ID": context.branch_id,
                "WORK_ID": context.work_id,
                "CTRT_ID": context.contract_id,
                "CUST_ID": context.customer_id,
                "PROD_CD": context.product_code,
                "CRR_TSK_CL": context.work_type_code,
            },
        )
        if not isinstance(data, dict):
            raise InventoryClientError("Unexpected equipment response")

        def _rows(key: str) -> list[dict]:
            value = data.get(key) or []
            return [row for row in value if isinstance(row, dict)]

        snapshot = InventorySnapshot(
            slots=[ContractEquipmentRow.model_validate(r).to_slot() for r in _rows("output2")],
            stock=[EquipmentUnitRow.model_validate(r).to_unit() for r in _rows("output3")],
            installed=[EquipmentUnitRow.model_validate(r).to_unit() for r in _rows("output4")],
            removed=[EquipmentUnitRow.model_validate(r).to_unit() for r in _rows("output5")],
        )
        logger.info(
            "work_equipment_fetched work_id=%s slots=%s stock=%s",
            context.work_id,
            len(snapshot.slots),
            len(snapshot.stock),
        )
        return snapshot

    async def send_signal(self, request: SignalRequest, context: WorkContext) -> SignalResponse:
        data = await self._post(
            "/signal/send",
            {
                "MSG_ID": request.message_id,
                "CUST_ID": context.customer_id,
                "CTRT_ID": context.contract_id,
                "SO_ID": context.branch_id,
                "EQT_NO": ",".join(request.unit_ids),
                "PROD_CD": context.product_code,
                "WRK_ID": context.work_id,
                "REG_UID": context.operator_id,
                "ETC_1": request.etc_1,
                "ETC_2": request.etc_2,
                "ETC_3": request.etc_3,
                "ETC_4": request.etc_4,
                "VOIP_JOIN_CTRT_ID": context.join_contract_id,
            },
        )
        return SignalResponse.model_validate(data)


def get_inventory_client() -> InventoryClient:
    return InventoryClient(settings.inventory_api_base_url, timeout=settings.inventory_api_timeout)
