import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, JSON, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class EquipmentCategory(enum.Enum):
    """Equipment mid-category codes as reported by the inventory backend."""

    router = "01"
    wireless_router = "02"
    modem = "03"
    set_top_box = "04"
    fiber_terminal = "05"
    cable = "06"
    special = "07"
    voip_gateway = "08"
    voip_extension = "10"
    isp_device = "21"
    certified_ont = "31"
    certified_ap = "32"


class ChangeTag(enum.Enum):
    new = "new"
    reuse = "reuse"


class TransportMode(enum.Enum):
    fiber = "fiber"
    wide_band = "wide_band"
    vdsl = "vdsl"
    none = "none"

    @classmethod
    def from_link_code(cls, link_code: str | None) -> "TransportMode":
        code = (link_code or "").strip().upper()
        if code in {"F", "FG", "Z", "ZG"}:
            return cls.fiber
        if code in {"N", "NG"}:
            return cls.wide_band
        if code in {"V", "VG"}:
            return cls.vdsl
        return cls.none


class ProcessStep(enum.Enum):
    contract_review = "contract_review"
    reception_review = "reception_review"
    equipment_assignment = "equipment_assignment"
    line_registration = "line_registration"
    completion = "completion"
    post_process = "post_process"


class CertificationState(enum.Enum):
    unsubscribed = "unsubscribed"
    subscribed = "subscribed"
    directory_linked = "directory_linked"
    line_registered = "line_registered"
    activated = "activated"
    terminated = "terminated"


class AllocationLoadState(enum.Enum):
    idle = "idle"
    loading = "loading"
    loaded = "loaded"
    failed = "failed"


class CertifyType(enum.Enum):
    update = "U"
    create = "C"
    delete = "D"
    none = ""


class DraftKind(enum.Enum):
    equipment = "equipment"
    work_complete = "work_complete"


class WorkOrderDraft(Base):
    __tablename__ = "work_order_drafts"
    __table_args__ = (
        UniqueConstraint("work_id", "draft_kind", name="uq_work_order_drafts_work_kind"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    work_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    draft_kind: Mapped[DraftKind] = mapped_column(
        Enum(DraftKind, name="workorderdraftkind"), nullable=False
    )
    fingerprint: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )


class CertificationCallLog(Base):
    __tablename__ = "certification_call_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    work_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    contract_id: Mapped[str | None] = mapped_column(String(64))
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    result_code: Mapped[str | None] = mapped_column(String(40))
    message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
