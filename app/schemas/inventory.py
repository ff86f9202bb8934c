from __future__ import annotations

from pydantic import ConfigDict, Field

from app.schemas.certification import BackendPayload
from app.schemas.field_work import ContractEquipmentSlot, StockUnit

# Lent-status value the inventory backend uses for customer-owned units.
CUSTOMER_OWNED_LENT_CODE = "40"


class ContractEquipmentRow(BackendPayload):
    slot_id: str = Field(default="", alias="SVC_CMPS_ID")
    category_code: str = Field(default="", alias="ITEM_MID_CD")
    class_code: str = Field(default="", alias="EQT_CL_CD")
    class_name: str = Field(default="", alias="EQT_CL_NM")
    category_name: str = Field(default="", alias="ITEM_MID_NM")

    def to_slot(self) -> ContractEquipmentSlot:
        return ContractEquipmentSlot(
            slot_id=self.slot_id,
            category_code=self.category_code,
            model_code=self.class_code,
            class_code=self.class_code,
            display_name=self.class_name or self.category_name,
        )


class EquipmentUnitRow(BackendPayload):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
        protected_namespaces=(),
    )

    unit_id: str = Field(default="", alias="EQT_NO")
    serial_no: str = Field(default="", alias="EQT_SERNO")
    mac_address: str = Field(default="", alias="MAC_ADDRESS")
    category_code: str = Field(default="", alias="ITEM_MID_CD")
    class_code: str = Field(default="", alias="EQT_CL_CD")
    model_name: str = Field(default="", alias="EQT_CL_NM")
    item_code: str = Field(default="", alias="ITEM_CD")
    unit_dir_id: str = Field(default="", alias="EQT_UNI_ID")
    stb_cm_mac: str = Field(default="", alias="STB_CM_MAC")
    stb_rtca_id: str = Field(default="", alias="STB_RTCA_ID")
    owner_type: str = Field(default="", alias="OWNER_TP_CD")
    lent_code: str = Field(default="", alias="LENT_YN")

    def to_unit(self) -> StockUnit:
        return StockUnit(
            unit_id=self.unit_id,
            serial_no=self.serial_no,
            mac_address=self.mac_address or None,
            category_code=self.category_code,
            model_code=self.class_code,
            model_name=self.model_name,
            class_code=self.class_code,
            item_code=self.item_code,
            unit_dir_id=self.unit_dir_id,
            stb_cm_mac=self.stb_cm_mac,
            stb_rtca_id=self.stb_rtca_id,
            owner_type=self.owner_type,
            customer_owned=self.lent_code == CUSTOMER_OWNED_LENT_CODE,
        )
