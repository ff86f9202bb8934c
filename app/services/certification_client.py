"""Client for the line-management (certification) backend.

Each method maps to one backend operation and returns a normalized response
model from ``app.schemas.certification``. Transport failures raise
``CertificationClientError``; business failures come back as data and are
judged by the caller.
"""

from typing import Any

from app.config import settings
from app.logging import get_logger
from app.schemas.certification import (
    ActivationResult,
    CertificationStatus,
    ContractLineInfo,
    DuplicationCheck,
    NetworkLineInfo,
    NetworkNodeRow,
    PortRow,
    SubscriptionResult,
    TerminalInfo,
    TerminationResult,
    unwrap_rows,
    upper_keys,
)
from app.services.backend_client import BackendClient, BackendClientError

logger = get_logger(__name__)

ELIGIBLE_BRANCH_CODE_GROUP = "CMIF006"
CERTIFICATION_PRODUCT_CODE_GROUP = "LGCT001"


class CertificationClientError(BackendClientError):
    """Raised when the certification backend cannot be reached or errors."""

    pass


class CertificationClient(BackendClient):
    error_class = CertificationClientError

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    async def get_contract_line_info(self, contract_id: str) -> ContractLineInfo | None:
        data = await self._post("/customer/etc/getUplsCtrtInfo", {"CTRT_ID": contract_id})
        rows = unwrap_rows(data)
        return ContractLineInfo.model_validate(rows[0]) if rows else None

    async def register_subscription(self, payload: dict[str, Any]) -> SubscriptionResult:
        data = await self._post("/customer/receipt/uplsEntrBgnEstbChg", payload)
        return SubscriptionResult.model_validate(data)

    async def cancel_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._post("/lgu/network-fault", payload)
        rows = unwrap_rows(data)
        return upper_keys(rows[0]) if rows else {}

    async def request_directory_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Directory (LDAP) event request, used for unlink cleanup."""
        data = await self._post("/lgu/construction-request", payload)
        rows = unwrap_rows(data)
        return upper_keys(rows[0]) if rows else {}

    # -------------------------------------------------------------------------
    # Directory link
    # -------------------------------------------------------------------------

    async def lookup_directory(self, contract_id: str) -> list[dict[str, Any]]:
        data = await self._post("/customer/etc/getUplsLdapRslt", {"CTRT_ID": contract_id})
        return [upper_keys(row) for row in unwrap_rows(data)]

    # -------------------------------------------------------------------------
    # Line information
    # -------------------------------------------------------------------------

    async def get_network_line(self, subscription_no: str, contract_id: str) -> NetworkLineInfo:
        data = await self._post(
            "/customer/etc/getUplsNwcs",
            {"ENTR_NO": subscription_no, "CTRT_ID": contract_id},
        )
        return NetworkLineInfo.model_validate(data)

    async def get_subscriber_equipment(
        self,
        subscription_no: str,
        subscription_request_no: str,
        business_type: str,
        contract_id: str,
    ) -> dict[str, Any]:
        data = await self._post(
            "/customer/etc/getUplsEntrEqipDtl",
            {
                "ENTR_NO": subscription_no,
                "ENTR_RQST_NO": subscription_request_no or "null",
                "BIZ_TYPE": business_type,
                "CTRT_ID": contract_id,
            },
        )
        rows = unwrap_rows(data)
        return upper_keys(rows[0]) if rows else {}

    async def list_network_nodes(
        self,
        command: str,
        subscription_no: str,
        subscription_request_no: str,
        business_type: str,
        contract_id: str,
    ) -> list[NetworkNodeRow]:
        data = await self._post(
            "/customer/etc/getUplsEqipInfo",
            {
                "COMMAND": command,
                "ENTR_NO": subscription_no,
                "ENTR_RQST_NO": subscription_request_no or "null",
                "BIZ_TYPE": business_type,
                "CTRT_ID": contract_id,
            },
        )
        return [NetworkNodeRow.model_validate(row) for row in unwrap_rows(data)]

    async def list_ports(self, command: str, equipment_id: str, contract_id: str) -> list[PortRow]:
        data = await self._post(
            "/customer/etc/getUplsEqipPortInfo",
            {"COMMAND": command, "EQIP_ID": equipment_id, "CTRT_ID": contract_id},
        )
        return [PortRow.model_validate(row) for row in unwrap_rows(data)]

    async def check_duplicate_subscriber(
        self, subscription_no: str, equipment_id: str, port_no: str, contract_id: str
    ) -> DuplicationCheck:
        data = await self._post(
            "/customer/etc/getUplsDuplicationMember",
            {
                "ENTR_NO": subscription_no,
                "EQIP_ID": equipment_id,
                "PORT_NM": port_no.replace("/", "__"),
                "CTRT_ID": contract_id,
            },
        )
        return DuplicationCheck.model_validate(data)

    # -------------------------------------------------------------------------
    # Terminal certification commands
    # -------------------------------------------------------------------------

    async def lookup_terminal(self, payload: dict[str, Any]) -> TerminalInfo:
        data = await self._post("/customer/etc/getCertifyCL03", {"CMD": "CL-03", **payload})
        return TerminalInfo.model_validate(data)

    async def activate(self, payload: dict[str, Any]) -> ActivationResult:
        data = await self._post("/customer/etc/setCertifyCL04", {"CMD": "CL-04", **payload})
        return ActivationResult.model_validate(data)

    async def terminate(self, payload: dict[str, Any]) -> TerminationResult:
        body = {**payload, "CONT_ID": payload.get("CTRT_ID", "")}
        data = await self._post("/customer/etc/setCertifyCL06", body)
        return TerminationResult.model_validate(data)

    async def certification_status(self, payload: dict[str, Any]) -> CertificationStatus:
        body = {**payload, "CONT_ID": payload.get("CTRT_ID", "")}
        data = await self._post("/customer/etc/getCertifyCL08", body)
        return CertificationStatus.model_validate(data)

    # -------------------------------------------------------------------------
    # Catalogs
    # -------------------------------------------------------------------------

    async def _code_group(self, group: str) -> list[dict[str, Any]]:
        data = await self._post("/common/getCommonCodes", {"CODE_GROUP": group})
        return [upper_keys(row) for row in unwrap_rows(data)]

    async def eligible_branches(self) -> set[str]:
        rows = await self._code_group(ELIGIBLE_BRANCH_CODE_GROUP)
        return {str(row.get("CODE") or row.get("COMMON_CD") or "") for row in rows} - {""}

    async def certification_products(self) -> dict[str, str]:
        """Product code to link code for products that need certification."""
        rows = await self._code_group(CERTIFICATION_PRODUCT_CODE_GROUP)
        products: dict[str, str] = {}
        for row in rows:
            code = str(row.get("CODE") or row.get("COMMON_CD") or "")
            if code:
                products[code] = str(row.get("REF_CODE8") or "")
        return products


def get_certification_client() -> CertificationClient:
    return CertificationClient(
        settings.certification_api_base_url,
        timeout=settings.certification_api_timeout,
    )
