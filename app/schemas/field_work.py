from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from app.models.field_work import (
    AllocationLoadState,
    CertificationState,
    CertifyType,
    ChangeTag,
    ProcessStep,
    TransportMode,
)


class ContractEquipmentSlot(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    slot_id: str
    category_code: str
    model_code: str = ""
    display_name: str = ""
    class_code: str = ""


class StockUnit(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    unit_id: str = ""
    serial_no: str = ""
    mac_address: str | None = None
    category_code: str
    model_code: str = ""
    model_name: str = ""
    class_code: str = ""
    item_code: str = ""
    unit_dir_id: str = ""
    stb_cm_mac: str = ""
    stb_rtca_id: str = ""
    owner_type: str = ""
    customer_owned: bool = False


class AllocationRecord(BaseModel):
    slot: ContractEquipmentSlot
    unit: StockUnit
    install_location: str = ""
    mac_override: str | None = None
    change_tag: ChangeTag = ChangeTag.new

    @property
    def unit_id(self) -> str:
        return self.unit.unit_id

    @property
    def category_code(self) -> str:
        return self.unit.category_code or self.slot.category_code

    @property
    def class_code(self) -> str:
        return self.unit.class_code or self.slot.class_code

    @property
    def mac_address(self) -> str | None:
        return self.mac_override or self.unit.mac_address

    @property
    def model_label(self) -> str:
        return (
            self.unit.model_name
            or self.slot.display_name
            or self.unit.model_code
            or self.slot.model_code
        )


class RemovalRecord(BaseModel):
    unit: StockUnit
    unit_lost: bool = False
    adapter_lost: bool = False
    remote_lost: bool = False
    cable_lost: bool = False
    cradle_lost: bool = False

    @property
    def unit_id(self) -> str:
        return self.unit.unit_id


class AddOnProduct(BaseModel):
    product_code: str
    name: str = ""
    # Category references from the product catalog (ATTR_VAL_22).
    attribute_codes: str = ""


class WorkContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    work_id: str
    contract_id: str
    customer_id: str = ""
    work_type_code: str = ""
    product_group: str = ""
    product_code: str = ""
    certification_applies: bool = False
    transport_mode: TransportMode = TransportMode.none
    branch_id: str = ""
    operator_id: str = ""
    market_code: str = ""
    voip_product_code: str = ""
    isp_product_code: str = ""
    join_contract_id: str = ""
    network_class: str = ""
    previous_contract_id: str = ""
    add_ons: tuple[AddOnProduct, ...] = ()

    @property
    def voip_only(self) -> bool:
        return bool(self.voip_product_code)


class InventorySnapshot(BaseModel):
    """What the technician inventory service reports for one work order."""

    slots: list[ContractEquipmentSlot] = Field(default_factory=list)
    stock: list[StockUnit] = Field(default_factory=list)
    installed: list[StockUnit] = Field(default_factory=list)
    removed: list[StockUnit] = Field(default_factory=list)


class AllocationSnapshot(BaseModel):
    allocations: list[AllocationRecord] = Field(default_factory=list)
    removals: list[RemovalRecord] = Field(default_factory=list)
    installed: list[StockUnit] = Field(default_factory=list)
    fingerprint: str = ""


class SignalRequest(BaseModel):
    message_id: str
    unit_ids: list[str]
    etc_1: str = ""
    etc_2: str = ""
    etc_3: str = ""
    etc_4: str = ""


class SignalResult(BaseModel):
    success: bool
    message: str = ""
    request: SignalRequest | None = None


class DirectoryLinkResult(BaseModel):
    empty: bool = False
    data: dict = Field(default_factory=dict)


class NetworkNode(BaseModel):
    equipment_id: str
    name: str = ""
    extra: dict = Field(default_factory=dict)


class PortInfo(BaseModel):
    port_no: str
    in_use: bool = False
    subscriber_no: str = ""


class LineDescriptor(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    equipment_id: str = ""
    port_no: str = ""
    equipment_divs: str = ""
    olt_id: str = ""
    olt_port: str = ""
    port_in_use: bool = False
    port_subscriber_no: str = ""
    model_name: str = ""
    install_place: str = ""
    terminal_type: str = ""
    ont_mac: str = ""
    ont_serial: str = ""
    ap_mac: str = ""
    dev_id: str = ""
    ip: str = ""
    port: str = ""
    max_speed: str = ""
    status: str = ""
    deleted: bool = False
    fingerprint: str = ""


class CertificationSession(BaseModel):
    state: CertificationState = CertificationState.unsubscribed
    subscription_no: str = ""
    subscription_request_no: str = ""
    directory_link: DirectoryLinkResult | None = None
    descriptor: LineDescriptor | None = None
    network_nodes: list[NetworkNode] = Field(default_factory=list)
    selected_node_id: str = ""
    ports: list[PortInfo] = Field(default_factory=list)
    certify_type: CertifyType = CertifyType.none
    previously_certified: bool | None = None


class ProcessState(BaseModel):
    steps: list[ProcessStep]
    current_step: int = 1
    completed: dict[int, bool] = Field(default_factory=dict)
    status_code: str = "1"

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def current(self) -> ProcessStep:
        return self.steps[self.current_step - 1]

    @property
    def read_only(self) -> bool:
        return self.status_code == "4"


class SessionView(BaseModel):
    """Read model returned to callers after every command."""

    context: WorkContext
    load_state: AllocationLoadState
    process: ProcessState
    certification: CertificationSession
    allocations: list[AllocationRecord]
    removals: list[RemovalRecord]
    unallocated_slot_ids: list[str]
    fingerprint: str
    signal: SignalResult | None = None


class TerminationOutcome(BaseModel):
    certified: bool
    success: bool
    message: str = ""


class CertificationProfile(BaseModel):
    applies: bool
    link_code: str = ""
    transport_mode: TransportMode = TransportMode.none
