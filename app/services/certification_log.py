from sqlalchemy.orm import Session

from app.models.field_work import CertificationCallLog


def record_call(
    db: Session,
    work_id: str,
    contract_id: str | None,
    operation: str,
    success: bool,
    result_code: str = "",
    message: str = "",
) -> CertificationCallLog:
    entry = CertificationCallLog(
        work_id=work_id,
        contract_id=contract_id,
        operation=operation,
        success=success,
        result_code=result_code or None,
        message=(message or None),
    )
    db.add(entry)
    db.commit()
    return entry


def list_calls(db: Session, work_id: str, limit: int = 100) -> list[CertificationCallLog]:
    return (
        db.query(CertificationCallLog)
        .filter(CertificationCallLog.work_id == work_id)
        .order_by(CertificationCallLog.created_at.desc())
        .limit(limit)
        .all()
    )
