from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.db import get_db
from app.services.certification_client import get_certification_client
from app.services.field_work import FieldWorkService
from app.services.inventory_client import get_inventory_client
from app.services.work_drafts import build_draft_store

_SERVICES: dict[str, FieldWorkService] = {}


def get_field_work_service(
    x_technician_id: str = Header(default="default"),
    db: Session = Depends(get_db),
) -> FieldWorkService:
    """One field work service per technician, kept across requests."""
    service = _SERVICES.get(x_technician_id)
    if service is None:
        service = FieldWorkService(
            get_inventory_client(),
            get_certification_client(),
            drafts=build_draft_store(db),
        )
        _SERVICES[x_technician_id] = service
    service.bind_db(db)
    return service


def reset_services() -> None:
    _SERVICES.clear()


__all__ = ["get_db", "get_field_work_service", "reset_services"]
