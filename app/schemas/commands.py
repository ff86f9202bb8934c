from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.field_work import SessionView, WorkContext


class CommandBase(BaseModel):
    work_id: str


class OpenWork(CommandBase):
    kind: Literal["open"] = "open"
    context: WorkContext
    status_code: str = "1"
    technician_id: str = ""
    detect_certification: bool = False


class AssignUnit(CommandBase):
    kind: Literal["assign"] = "assign"
    slot_id: str
    unit_id: str
    install_location: str = ""
    mac_override: str | None = None


class UnassignSlot(CommandBase):
    kind: Literal["unassign"] = "unassign"
    slot_id: str


class RecoverUnit(CommandBase):
    kind: Literal["recover"] = "recover"
    unit_id: str


class ReuseUnit(CommandBase):
    kind: Literal["reuse"] = "reuse"
    unit_id: str
    slot_id: str


class SetRemovalFlags(CommandBase):
    kind: Literal["removal_flags"] = "removal_flags"
    unit_id: str
    flags: dict[str, bool] = Field(default_factory=dict)


class SaveEquipment(CommandBase):
    kind: Literal["save_equipment"] = "save_equipment"


class SendSignal(CommandBase):
    kind: Literal["send_signal"] = "send_signal"


class Navigate(CommandBase):
    kind: Literal["navigate"] = "navigate"
    action: Literal["next", "previous", "jump"]
    step: int | None = None


class Subscribe(CommandBase):
    kind: Literal["subscribe"] = "subscribe"
    request_division_code: str | None = None


class LinkDirectory(CommandBase):
    kind: Literal["link_directory"] = "link_directory"


class QueryLine(CommandBase):
    kind: Literal["query_line"] = "query_line"
    node_id: str | None = None


class SelectNode(CommandBase):
    kind: Literal["select_node"] = "select_node"
    node_id: str


class SelectPort(CommandBase):
    kind: Literal["select_port"] = "select_port"
    port_no: str


class LookupTerminal(CommandBase):
    kind: Literal["lookup_terminal"] = "lookup_terminal"
    ont_mac: str = ""
    ont_serial: str = ""
    ap_mac: str = ""


class RegisterLine(CommandBase):
    kind: Literal["register_line"] = "register_line"


class DetermineCertifyType(CommandBase):
    kind: Literal["certify_type"] = "certify_type"


class ActivateService(CommandBase):
    kind: Literal["activate"] = "activate"
    reason: str | None = None


class TerminateService(CommandBase):
    kind: Literal["terminate"] = "terminate"


class ChangeCertification(CommandBase):
    kind: Literal["change_certification"] = "change_certification"
    reason: str = ""


class UpdateStatus(CommandBase):
    kind: Literal["status"] = "status"
    status_code: str


class SaveCompletionForm(CommandBase):
    kind: Literal["completion_form"] = "completion_form"
    fields: dict[str, Any] = Field(default_factory=dict)


class ClearDraft(CommandBase):
    kind: Literal["clear_draft"] = "clear_draft"


Command = Annotated[
    Union[
        OpenWork,
        AssignUnit,
        UnassignSlot,
        RecoverUnit,
        ReuseUnit,
        SetRemovalFlags,
        SaveEquipment,
        SendSignal,
        Navigate,
        Subscribe,
        LinkDirectory,
        QueryLine,
        SelectNode,
        SelectPort,
        LookupTerminal,
        RegisterLine,
        DetermineCertifyType,
        ActivateService,
        TerminateService,
        ChangeCertification,
        UpdateStatus,
        SaveCompletionForm,
        ClearDraft,
    ],
    Field(discriminator="kind"),
]


class StepResult(BaseModel):
    kind: str
    ok: bool = True
    message: str = ""
    data: dict[str, Any] | None = None
    view: SessionView | None = None


class CertificationCallRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation: str
    success: bool
    result_code: str | None = None
    message: str | None = None
    created_at: datetime | None = None


class CommandRequest(BaseModel):
    command: Command
