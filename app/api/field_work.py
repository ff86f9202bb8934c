"""
Field Work REST API Endpoints

Provides REST API for:
- Executing field work commands (allocation, validation, signalling,
  step navigation, certification protocol steps, drafts)
- Reading the open work order's session view
- Listing certification call history
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_field_work_service
from app.db import get_db
from app.schemas.commands import CertificationCallRead, CommandRequest, StepResult
from app.schemas.field_work import SessionView
from app.services import certification_log
from app.services.field_work import FieldWorkService

router = APIRouter(prefix="/field-work", tags=["field-work"])


@router.post("/commands", response_model=StepResult)
async def execute_command(
    payload: CommandRequest,
    service: FieldWorkService = Depends(get_field_work_service),
):
    """Run one command against the technician's open work order."""
    return await service.execute(payload.command)


@router.get("/session", response_model=SessionView)
def get_session(service: FieldWorkService = Depends(get_field_work_service)):
    return service.view()


@router.get("/{work_id}/certification-calls", response_model=list[CertificationCallRead])
def list_certification_calls(
    work_id: str,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return certification_log.list_calls(db, work_id, limit=limit)
