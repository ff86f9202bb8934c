from app.models.field_work import (  # noqa: F401
    AllocationLoadState,
    CertificationCallLog,
    CertificationState,
    CertifyType,
    ChangeTag,
    DraftKind,
    EquipmentCategory,
    ProcessStep,
    TransportMode,
    WorkOrderDraft,
)
