"""Payloads exchanged with the line-management backend.

The backend answers with upper-case keys, sometimes lower-case ones, sometimes
wrapped in ``data``/``output`` or in a single-element list. Every response
model normalizes that at the boundary so service code reads plain attributes.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def unwrap_rows(payload: Any) -> list[dict[str, Any]]:
    """Extract a row list from a backend list response."""
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        for key in ("output", "data"):
            rows = payload.get(key)
            if isinstance(rows, list):
                return [row for row in rows if isinstance(row, dict)]
        return [payload] if payload else []
    return []


def upper_keys(row: dict[str, Any]) -> dict[str, Any]:
    return {str(key).upper(): value for key, value in row.items()}


class BackendPayload(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True, extra="ignore", coerce_numbers_to_str=True
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict):
            return {}
        nested = data.get("data")
        if isinstance(nested, dict):
            data = nested
        elif isinstance(nested, list) and nested and isinstance(nested[0], dict):
            data = nested[0]
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            name = str(key)
            normalized[name if name in cls.model_fields else name.upper()] = value
        return normalized


class SubscriptionResult(BackendPayload):
    result_code: str = Field(default="N", alias="RESULT_CD")
    result_message: str = Field(default="", alias="RESULT_MSG")
    subscription_no: str = Field(default="", alias="ENTR_NO")
    subscription_request_no: str = Field(default="", alias="ENTR_RQST_NO")

    @property
    def success(self) -> bool:
        return self.result_code == "Y"


class ContractLineInfo(BackendPayload):
    subscription_no: str = Field(default="", alias="ENTR_NO")
    subscription_request_no: str = Field(default="", alias="ENTR_RQST_NO")


class NetworkLineInfo(BackendPayload):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
        protected_namespaces=(),
    )

    result_code: str = Field(default="", alias="RESULT_CD")
    result_message: str = Field(default="", alias="RESULT_MSG")
    model_name: str = Field(default="", alias="MDL_NM")
    equipment_id: str = Field(default="", alias="EQIP_ID")
    port_name: str = Field(default="", alias="PRT_INDX_NM")
    install_place: str = Field(default="", alias="ESTB_PLC_NM")

    @property
    def success(self) -> bool:
        return not self.result_code.startswith("N")


class NetworkNodeRow(BackendPayload):
    model_config = ConfigDict(
        populate_by_name=True, extra="allow", coerce_numbers_to_str=True
    )

    equipment_id: str = Field(default="", alias="EQIP_ID")
    name: str = Field(default="", alias="EQIP_NM")


class PortRow(BackendPayload):
    port_no: str = Field(default="", alias="PORT_NO")
    usage: str = Field(default="N", alias="PT_USE")
    subscriber_no: str = Field(default="", alias="ENTR_NO")

    @property
    def in_use(self) -> bool:
        return self.usage.upper() == "Y"


class DuplicationCheck(BackendPayload):
    result_code: str = Field(default="", alias="RESULT_CD")
    result_message: str = Field(default="", alias="RESULT_MSG")
    subscriber_exists: str = Field(default="N", alias="ENTR_EXIST")

    @property
    def success(self) -> bool:
        return not self.result_code.startswith("N")

    @property
    def duplicate(self) -> bool:
        return self.subscriber_exists.upper() == "Y"


class TerminalInfo(BackendPayload):
    terminal_type: str = Field(default="", alias="T")
    ont_mac: str = Field(default="", alias="ONT_MAC")
    ont_serial: str = Field(default="", alias="ONT_SERIAL")
    ap_mac: str = Field(default="", alias="AP_MAC")
    dev_id: str = Field(default="", alias="DEV_ID")
    ip: str = Field(default="", alias="IP")
    port: str = Field(default="", alias="PORT")
    max_speed: str = Field(default="", alias="MAX_SPEED")
    status: str = Field(default="", alias="ST")
    equipment_id: str = Field(default="", alias="EQIP_ID")
    port_no: str = Field(default="", alias="EQIP_PORT_NO")
    error: str = Field(default="", alias="ERROR")


class ActivationResult(BackendPayload):
    code: str = Field(default="", alias="CODE")
    message: str = Field(default="", alias="MESSAGE")
    result_code: str = Field(default="", alias="RESULT_CODE")
    result_message: str = Field(default="", alias="RESULT_MSG")

    @property
    def status_code(self) -> str:
        # An accepted request without any code counts as success.
        return self.code or self.result_code or "SUCCESS"

    @property
    def status_message(self) -> str:
        return self.message or self.result_message


class CertificationStatus(BackendPayload):
    contract_id: str = Field(default="", alias="CONT_ID")
    error: str = Field(default="", alias="ERROR")

    def certified_for(self, contract_id: str) -> bool:
        return not self.error and bool(self.contract_id) and self.contract_id == contract_id


class TerminationResult(BackendPayload):
    result_code: str = Field(default="", alias="RESULT_CD")
    result_message: str = Field(default="", alias="RESULT_MSG")
    error: str = Field(default="", alias="ERROR")

    @property
    def success(self) -> bool:
        return not self.error and not self.result_code.startswith("N")


class SignalResponse(BackendPayload):
    code: str = Field(default="", alias="CODE")
    message: str = Field(default="", alias="MESSAGE")
    result: str = Field(default="", alias="RESULT")

    @property
    def success(self) -> bool:
        if self.result:
            return self.result.upper().startswith("TRUE")
        return self.code.upper() in {"SUCCESS", "OK"}
