import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..auth.security import (
    CONTRACT_DELETE_ROLES,
    MANAGE_ROLES,
    VIEW_ROLES,
    get_current_user,
    primary_role,
    require_roles,
)
from ..config import settings
from ..db import get_db
from ..models.models import (
    Customer,
    Project,
    ServiceContract,
    ServiceContractSupplier,
    ServiceJob,
    Supplier,
    User,
)
from ..schemas.servicing import ContractCreate, ContractUpdate, GenerateJobsRequest
from ..services import servicing_store as store
from ..services.audit import compute_diff, create_audit_log, get_audit_logs
from ..services.contract_numbers import next_contract_number
from ..services.job_scheduler import (
    generate_initial_schedule,
    regenerate_schedule,
    suggest_schedule_dates,
)
from .jobs import serialize_job


router = APIRouter(prefix="/servicing/contracts", tags=["servicing"])
logger = structlog.get_logger(__name__)


def serialize_contract(contract: ServiceContract, job_count: Optional[int] = None) -> Dict[str, Any]:
    return {
        "id": str(contract.id),
        "contract_no": contract.contract_no,
        "title": contract.title,
        "customer": {
            "id": str(contract.customer.id),
            "name": contract.customer.name,
            "customer_number": contract.customer.customer_number,
        } if contract.customer else None,
        "project": {
            "id": str(contract.project.id),
            "project_number": contract.project.project_number,
            "name": contract.project.name,
        } if contract.project else None,
        "service_type": contract.service_type,
        "frequency": contract.frequency,
        "start_date": contract.start_date.isoformat() if contract.start_date else None,
        "end_date": contract.end_date.isoformat() if contract.end_date else None,
        "status": contract.status,
        "file_path": contract.file_path,
        "created_by": {
            "id": str(contract.created_by.id),
            "first_name": contract.created_by.first_name,
            "last_name": contract.created_by.last_name,
        } if contract.created_by else None,
        "suppliers": [
            {
                "id": str(link.supplier.id),
                "name": link.supplier.name,
                "email": link.supplier.email,
                "phone": link.supplier.phone,
            }
            for link in (contract.supplier_links or [])
            if link.supplier
        ],
        "job_count": job_count,
        "created_at": contract.created_at.isoformat() if contract.created_at else None,
        "updated_at": contract.updated_at.isoformat() if contract.updated_at else None,
    }


def _contract_snapshot(contract: ServiceContract) -> Dict[str, Any]:
    return {
        "title": contract.title,
        "customer_id": str(contract.customer_id) if contract.customer_id else None,
        "project_id": str(contract.project_id) if contract.project_id else None,
        "service_type": contract.service_type,
        "frequency": contract.frequency,
        "start_date": contract.start_date.isoformat() if contract.start_date else None,
        "end_date": contract.end_date.isoformat() if contract.end_date else None,
        "status": contract.status,
        "file_path": contract.file_path,
        "supplier_ids": sorted(str(link.supplier_id) for link in (contract.supplier_links or [])),
    }


def _contracts_query(db: Session):
    return db.query(ServiceContract).options(
        joinedload(ServiceContract.customer),
        joinedload(ServiceContract.project),
        joinedload(ServiceContract.created_by),
        joinedload(ServiceContract.supplier_links).joinedload(ServiceContractSupplier.supplier),
    )


def _get_contract(contract_id: str, db: Session) -> ServiceContract:
    try:
        contract_uuid = uuid.UUID(str(contract_id))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid contract id") from exc
    contract = _contracts_query(db).filter(ServiceContract.id == contract_uuid).first()
    if not contract:
        raise HTTPException(status_code=404, detail="Contract not found")
    return contract


def _job_count(db: Session, contract_id: uuid.UUID) -> int:
    return db.query(func.count(ServiceJob.id)).filter(ServiceJob.contract_id == contract_id).scalar() or 0


def _validate_contract_fields(data: Dict[str, Any]) -> None:
    if not data.get("title"):
        raise HTTPException(status_code=400, detail="Contract title is required")
    if not data.get("customer_id"):
        raise HTTPException(status_code=400, detail="Customer is required")
    if not data.get("service_type") or not data.get("frequency"):
        raise HTTPException(status_code=400, detail="Service type and frequency are required")
    if not data.get("start_date") or not data.get("end_date"):
        raise HTTPException(status_code=400, detail="Start and end dates are required")
    if data["end_date"] <= data["start_date"]:
        raise HTTPException(status_code=400, detail="End date must be after start date")


def _check_references(db: Session, data: Dict[str, Any], supplier_ids: List[uuid.UUID]) -> None:
    if not db.query(Customer).filter(Customer.id == data["customer_id"]).first():
        raise HTTPException(status_code=404, detail="Customer not found")
    if data.get("project_id") and not db.query(Project).filter(Project.id == data["project_id"]).first():
        raise HTTPException(status_code=404, detail="Project not found")
    if supplier_ids:
        found = {s.id for s in db.query(Supplier).filter(Supplier.id.in_(supplier_ids)).all()}
        missing = [str(s) for s in supplier_ids if s not in found]
        if missing:
            raise HTTPException(status_code=404, detail=f"Supplier not found: {', '.join(missing)}")


def _link_suppliers(contract: ServiceContract, supplier_ids: List[uuid.UUID]) -> None:
    """Make the contract's links match supplier_ids, positioned in request order."""
    wanted = list(dict.fromkeys(supplier_ids))
    for link in list(contract.supplier_links):
        if link.supplier_id not in wanted:
            contract.supplier_links.remove(link)
    linked = {link.supplier_id: link for link in contract.supplier_links}
    for position, supplier_id in enumerate(wanted):
        link = linked.get(supplier_id)
        if link is None:
            link = ServiceContractSupplier(supplier_id=supplier_id)
            contract.supplier_links.append(link)
        link.position = position


@router.get("")
def list_contracts(
    customer_id: Optional[uuid.UUID] = None,
    project_id: Optional[uuid.UUID] = None,
    service_type: Optional[str] = None,
    status: Optional[str] = None,
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(*VIEW_ROLES)),
):
    query = _contracts_query(db)
    if customer_id:
        query = query.filter(ServiceContract.customer_id == customer_id)
    if project_id:
        query = query.filter(ServiceContract.project_id == project_id)
    if service_type:
        query = query.filter(ServiceContract.service_type == service_type)
    if status:
        query = query.filter(ServiceContract.status == status)
    if q:
        like = f"%{q}%"
        query = query.filter(ServiceContract.title.ilike(like) | ServiceContract.contract_no.ilike(like))
    contracts = query.order_by(ServiceContract.created_at.desc()).all()

    counts = dict(
        db.query(ServiceJob.contract_id, func.count(ServiceJob.id))
        .group_by(ServiceJob.contract_id)
        .all()
    )
    return [serialize_contract(c, counts.get(c.id, 0)) for c in contracts]


@router.post("", status_code=201)
def create_contract(
    payload: ContractCreate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*MANAGE_ROLES)),
):
    data = payload.model_dump(exclude={"supplier_ids"})
    _validate_contract_fields(data)
    _check_references(db, data, payload.supplier_ids)

    now = datetime.utcnow()
    try:
        contract = ServiceContract(
            contract_no=next_contract_number(db),
            created_by_id=me.id,
            status="Active",
            created_at=now,
            updated_at=now,
            **data,
        )
        db.add(contract)
        db.flush()
        _link_suppliers(contract, payload.supplier_ids)
        db.flush()
        jobs = generate_initial_schedule(db, contract)
        create_audit_log(
            db,
            entity_type="service_contract",
            entity_id=str(contract.id),
            action="CREATE",
            actor_id=str(me.id),
            actor_role=primary_role(me),
            source="api",
            changes_json={"after": _contract_snapshot(contract)},
            context={"contract_no": contract.contract_no, "jobs_generated": len(jobs)},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info("contract_created", contract_id=str(contract.id), contract_no=contract.contract_no, jobs=len(jobs))
    return serialize_contract(_get_contract(str(contract.id), db), len(jobs))


@router.get("/{contract_id}")
def get_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    _=Depends(require_roles(*VIEW_ROLES)),
):
    contract = _get_contract(contract_id, db)
    jobs = store.load_jobs(db, [j.id for j in contract.jobs])
    data = serialize_contract(contract, len(jobs))
    data["jobs"] = [serialize_job(j) for j in jobs]
    return data


@router.put("/{contract_id}")
def update_contract(
    contract_id: str,
    payload: ContractUpdate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*MANAGE_ROLES)),
):
    contract = _get_contract(contract_id, db)
    before = _contract_snapshot(contract)

    updates = payload.model_dump(exclude_unset=True, exclude={"supplier_ids"})
    merged = {
        "title": contract.title,
        "customer_id": contract.customer_id,
        "project_id": contract.project_id,
        "service_type": contract.service_type,
        "frequency": contract.frequency,
        "start_date": contract.start_date,
        "end_date": contract.end_date,
    }
    merged.update({k: v for k, v in updates.items() if v is not None})
    _validate_contract_fields(merged)
    if "customer_id" in updates or "project_id" in updates or "supplier_ids" in payload.model_fields_set:
        _check_references(db, merged, payload.supplier_ids)

    for key, value in updates.items():
        # Required columns are never cleared by an update
        if value is None and key not in ("project_id", "file_path"):
            continue
        setattr(contract, key, value)
    if "supplier_ids" in payload.model_fields_set:
        _link_suppliers(contract, payload.supplier_ids)
    contract.updated_at = datetime.utcnow()

    try:
        db.flush()
        diff = compute_diff(before, _contract_snapshot(contract))
        if diff:
            create_audit_log(
                db,
                entity_type="service_contract",
                entity_id=str(contract.id),
                action="UPDATE",
                actor_id=str(me.id),
                actor_role=primary_role(me),
                source="api",
                changes_json=diff,
                context={"contract_no": contract.contract_no},
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    contract = _get_contract(contract_id, db)
    return serialize_contract(contract, _job_count(db, contract.id))


@router.delete("/{contract_id}")
def delete_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*CONTRACT_DELETE_ROLES)),
):
    contract = _get_contract(contract_id, db)
    job_count = _job_count(db, contract.id)
    create_audit_log(
        db,
        entity_type="service_contract",
        entity_id=str(contract.id),
        action="DELETE",
        actor_id=str(me.id),
        actor_role=primary_role(me),
        source="api",
        changes_json={"before": _contract_snapshot(contract)},
        context={"contract_no": contract.contract_no, "jobs_deleted": job_count},
    )
    db.delete(contract)
    db.commit()
    logger.info("contract_deleted", contract_id=contract_id, jobs_deleted=job_count)
    return {"message": "Contract deleted successfully"}


@router.get("/{contract_id}/jobs/generate")
def get_suggested_dates(
    contract_id: str,
    months: int = Query(default=settings.suggested_months_default, ge=1, le=120),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    contract = _get_contract(contract_id, db)
    dates = suggest_schedule_dates(contract.start_date, contract.end_date, contract.frequency, months=months)
    return {
        "contract": {
            "id": str(contract.id),
            "contract_no": contract.contract_no,
            "frequency": contract.frequency,
            "start_date": contract.start_date.isoformat(),
            "end_date": contract.end_date.isoformat(),
        },
        "suggested_dates": [d.isoformat() for d in dates],
        "total_suggested": len(dates),
    }


@router.post("/{contract_id}/jobs/generate")
def generate_jobs(
    contract_id: str,
    payload: GenerateJobsRequest,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*MANAGE_ROLES)),
):
    result = regenerate_schedule(
        db,
        contract_id,
        payload.scheduled_dates,
        clear_existing=payload.clear_existing,
        assign_to_supplier=payload.assign_to_supplier,
        notes=payload.notes,
    )
    create_audit_log(
        db,
        entity_type="service_contract",
        entity_id=str(store.parse_uuid(contract_id, "contract id")),
        action="REGENERATE",
        actor_id=str(me.id),
        actor_role=primary_role(me),
        source="api",
        context={
            "jobs_generated": result.jobs_generated,
            "jobs_cleared": result.jobs_cleared,
            "clear_existing": payload.clear_existing,
            "assign_to_supplier": payload.assign_to_supplier,
        },
    )
    db.commit()
    return {
        "message": f"Generated {result.jobs_generated} jobs successfully",
        "jobs_generated": result.jobs_generated,
        "jobs_cleared": result.jobs_cleared,
        "jobs": [serialize_job(j) for j in result.jobs],
    }


@router.get("/{contract_id}/history")
def contract_history(
    contract_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _=Depends(require_roles(*VIEW_ROLES)),
):
    contract = _get_contract(contract_id, db)
    logs = get_audit_logs(db, entity_type="service_contract", entity_id=str(contract.id), limit=limit, offset=offset)
    return [
        {
            "id": str(log.id),
            "action": log.action,
            "actor_id": log.actor_id,
            "actor_role": log.actor_role,
            "source": log.source,
            "changes": log.changes_json,
            "context": log.context,
            "timestamp_utc": log.timestamp_utc.isoformat() if log.timestamp_utc else None,
        }
        for log in logs
    ]
