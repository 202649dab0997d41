import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..auth.security import (
    JOB_DELETE_ROLES,
    MANAGE_ROLES,
    VIEW_ROLES,
    get_current_user,
    has_any_role,
    primary_role,
    require_roles,
)
from ..db import get_db
from ..models.models import ServiceContract, ServiceJob, Supplier, User
from ..schemas.servicing import JobCreate, JobUpdate
from ..services import servicing_store as store
from ..services.audit import compute_diff, create_audit_log
from ..services.job_scheduler import (
    AssignedToType,
    JobStatus,
    apply_status,
    can_transition,
    is_overdue,
    reschedule_job,
)


router = APIRouter(prefix="/servicing/jobs", tags=["servicing"])
logger = structlog.get_logger(__name__)


def _user_summary(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {
        "id": str(user.id),
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
    }


def _supplier_summary(supplier: Optional[Supplier]) -> Optional[Dict[str, Any]]:
    if not supplier:
        return None
    return {
        "id": str(supplier.id),
        "name": supplier.name,
        "email": supplier.email,
        "phone": supplier.phone,
    }


def serialize_job(job: ServiceJob, today: Optional[date] = None) -> Dict[str, Any]:
    contract = job.contract
    return {
        "id": str(job.id),
        "contract_id": str(job.contract_id),
        "contract": {
            "id": str(contract.id),
            "contract_no": contract.contract_no,
            "service_type": contract.service_type,
            "frequency": contract.frequency,
        } if contract else None,
        "customer": {
            "id": str(job.customer.id),
            "name": job.customer.name,
            "customer_number": job.customer.customer_number,
        } if job.customer else None,
        "project": {
            "id": str(job.project.id),
            "project_number": job.project.project_number,
            "name": job.project.name,
        } if job.project else None,
        "scheduled_date": job.scheduled_date.isoformat(),
        "status": job.status,
        "is_overdue": is_overdue(job.scheduled_date, job.status, today),
        "assigned_to_type": job.assigned_to_type,
        "assigned_user": _user_summary(job.assigned_user),
        "assigned_supplier": _supplier_summary(job.assigned_supplier),
        "completion_notes": job.completion_notes,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


def _job_snapshot(job: ServiceJob) -> Dict[str, Any]:
    return {
        "status": job.status,
        "scheduled_date": job.scheduled_date.isoformat() if job.scheduled_date else None,
        "completion_notes": job.completion_notes,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def _jobs_query(db: Session):
    return db.query(ServiceJob).options(
        joinedload(ServiceJob.contract),
        joinedload(ServiceJob.customer),
        joinedload(ServiceJob.project),
        joinedload(ServiceJob.assigned_user),
        joinedload(ServiceJob.assigned_supplier),
    )


def _get_job(job_id: str, db: Session) -> ServiceJob:
    try:
        job_uuid = uuid.UUID(str(job_id))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid job id") from exc
    job = _jobs_query(db).filter(ServiceJob.id == job_uuid).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _ensure_job_access(job: ServiceJob, me: User, roles) -> None:
    if has_any_role(me, *roles):
        return
    if job.assigned_user_id == me.id:
        return
    raise HTTPException(status_code=403, detail="Insufficient permissions")


@router.get("")
def list_jobs(
    customer_id: Optional[uuid.UUID] = None,
    project_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    assigned_to: Optional[uuid.UUID] = None,
    assigned_to_type: Optional[str] = None,
    service_type: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    overdue: Optional[bool] = None,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    query = _jobs_query(db)
    # Staff without a viewing role only see their own jobs
    if not has_any_role(me, *VIEW_ROLES):
        query = query.filter(ServiceJob.assigned_user_id == me.id)
    if customer_id:
        query = query.filter(ServiceJob.customer_id == customer_id)
    if project_id:
        query = query.filter(ServiceJob.project_id == project_id)
    if status:
        query = query.filter(ServiceJob.status == status)
    if assigned_to:
        query = query.filter(or_(ServiceJob.assigned_user_id == assigned_to, ServiceJob.assigned_supplier_id == assigned_to))
    if assigned_to_type:
        query = query.filter(ServiceJob.assigned_to_type == assigned_to_type)
    if service_type:
        query = query.join(ServiceJob.contract).filter(ServiceContract.service_type == service_type)
    if date_from:
        query = query.filter(ServiceJob.scheduled_date >= date_from)
    if date_to:
        query = query.filter(ServiceJob.scheduled_date <= date_to)

    jobs = query.order_by(ServiceJob.scheduled_date.asc()).all()
    today = date.today()
    if overdue is not None:
        jobs = [j for j in jobs if is_overdue(j.scheduled_date, j.status, today) == overdue]
    return [serialize_job(j, today) for j in jobs]


@router.post("", status_code=201)
def create_job(
    payload: JobCreate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*MANAGE_ROLES)),
):
    contract = store.get_contract(db, payload.contract_id)

    assigned_user_id = None
    assigned_supplier_id = None
    if payload.assigned_to_type == AssignedToType.staff.value:
        if not db.query(User).filter(User.id == payload.assigned_to_id).first():
            raise HTTPException(status_code=404, detail="Assigned user not found")
        assigned_user_id = payload.assigned_to_id
    elif payload.assigned_to_type == AssignedToType.supplier.value:
        if not db.query(Supplier).filter(Supplier.id == payload.assigned_to_id).first():
            raise HTTPException(status_code=404, detail="Assigned supplier not found")
        assigned_supplier_id = payload.assigned_to_id
    else:
        raise HTTPException(status_code=400, detail="assigned_to_type must be Staff or Supplier")

    now = datetime.utcnow()
    job = ServiceJob(
        contract_id=contract.id,
        customer_id=contract.customer_id,
        project_id=contract.project_id,
        scheduled_date=payload.scheduled_date,
        status=JobStatus.scheduled.value,
        assigned_to_type=payload.assigned_to_type,
        assigned_user_id=assigned_user_id,
        assigned_supplier_id=assigned_supplier_id,
        completion_notes=payload.completion_notes,
        created_at=now,
        updated_at=now,
    )
    try:
        store.bulk_insert_jobs(db, [job])
        create_audit_log(
            db,
            entity_type="service_job",
            entity_id=str(job.id),
            action="CREATE",
            actor_id=str(me.id),
            actor_role=primary_role(me),
            source="api",
            context={"contract_id": str(contract.id), "scheduled_date": payload.scheduled_date.isoformat()},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return serialize_job(_get_job(str(job.id), db))


@router.get("/{job_id}")
def get_job(job_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    job = _get_job(job_id, db)
    _ensure_job_access(job, me, VIEW_ROLES)
    return serialize_job(job)


def _change_job(
    db: Session,
    job: ServiceJob,
    me: User,
    *,
    status: Optional[str] = None,
    scheduled_date: Optional[date] = None,
    completion_notes: Optional[str] = None,
    completed_at: Optional[datetime] = None,
) -> ServiceJob:
    before = _job_snapshot(job)
    now = datetime.utcnow()

    if scheduled_date and scheduled_date != job.scheduled_date:
        reschedule_job(job, scheduled_date, now=now)

    if status:
        valid = {s.value for s in JobStatus}
        if status not in valid:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        if not can_transition(job.status, status):
            raise HTTPException(status_code=400, detail=f"Cannot change job status from {job.status} to {status}")
        apply_status(job, status, completed_at=completed_at, now=now)
    elif completed_at:
        job.completed_at = completed_at

    if completion_notes is not None:
        job.completion_notes = completion_notes
    job.updated_at = now

    diff = compute_diff(before, _job_snapshot(job))
    if diff:
        if "status" in diff:
            action = "STATUS_CHANGE"
        elif "scheduled_date" in diff:
            action = "RESCHEDULE"
        else:
            action = "UPDATE"
        create_audit_log(
            db,
            entity_type="service_job",
            entity_id=str(job.id),
            action=action,
            actor_id=str(me.id),
            actor_role=primary_role(me),
            source="api",
            changes_json=diff,
            context={"contract_id": str(job.contract_id)},
        )
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info("job_updated", job_id=str(job.id), status=job.status, changed=sorted(diff.keys()))
    return _get_job(str(job.id), db)


@router.put("/{job_id}")
def update_job(
    job_id: str,
    payload: JobUpdate,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    job = _get_job(job_id, db)
    _ensure_job_access(job, me, MANAGE_ROLES)
    status = payload.status
    if payload.scheduled_date and payload.scheduled_date != job.scheduled_date and status:
        # An unchanged status sent with a new date is just an echo of the current one
        if status != job.status:
            raise HTTPException(
                status_code=400,
                detail="Reschedule and status change must be sent as separate updates",
            )
        status = None
    job = _change_job(
        db,
        job,
        me,
        status=status,
        scheduled_date=payload.scheduled_date,
        completion_notes=payload.completion_notes,
        completed_at=payload.completed_at,
    )
    return serialize_job(job)


@router.post("/{job_id}/start")
def start_job(job_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    job = _get_job(job_id, db)
    _ensure_job_access(job, me, MANAGE_ROLES)
    if job.status != JobStatus.scheduled.value:
        raise HTTPException(status_code=400, detail="Job is not in Scheduled status")
    return serialize_job(_change_job(db, job, me, status=JobStatus.in_progress.value))


@router.post("/{job_id}/complete")
def complete_job(job_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    job = _get_job(job_id, db)
    _ensure_job_access(job, me, MANAGE_ROLES)
    if job.status != JobStatus.in_progress.value:
        raise HTTPException(status_code=400, detail="Job is not In Progress")
    return serialize_job(_change_job(db, job, me, status=JobStatus.completed.value))


@router.post("/{job_id}/endorse")
def endorse_job(
    job_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*MANAGE_ROLES)),
):
    job = _get_job(job_id, db)
    if job.status != JobStatus.completed.value:
        raise HTTPException(status_code=400, detail="Only completed jobs can be endorsed")
    return serialize_job(_change_job(db, job, me, status=JobStatus.endorsed.value))


@router.delete("/{job_id}")
def delete_job(
    job_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*JOB_DELETE_ROLES)),
):
    job = _get_job(job_id, db)
    create_audit_log(
        db,
        entity_type="service_job",
        entity_id=str(job.id),
        action="DELETE",
        actor_id=str(me.id),
        actor_role=primary_role(me),
        source="api",
        changes_json={"before": _job_snapshot(job)},
        context={"contract_id": str(job.contract_id)},
    )
    db.delete(job)
    db.commit()
    return {"message": "Job deleted successfully"}
