"""
Database access used by the job scheduler.

Reads contracts, inserts jobs in bulk and deletes jobs by status.
Transactions belong to the caller's Session.
"""
import uuid
from typing import List, Sequence

from sqlalchemy.orm import Session, joinedload, selectinload

from ..models.models import ServiceContract, ServiceContractSupplier, ServiceJob
from .errors import NotFoundError, ValidationError


def parse_uuid(value, label: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid {label}") from exc


def get_contract(db: Session, contract_id) -> ServiceContract:
    contract_uuid = parse_uuid(contract_id, "contract id")
    contract = (
        db.query(ServiceContract)
        .options(selectinload(ServiceContract.supplier_links).joinedload(ServiceContractSupplier.supplier))
        .filter(ServiceContract.id == contract_uuid)
        .first()
    )
    if not contract:
        raise NotFoundError("Contract not found")
    return contract


def bulk_insert_jobs(db: Session, jobs: Sequence[ServiceJob]) -> None:
    db.add_all(list(jobs))
    db.flush()


def delete_jobs_by_status(db: Session, contract_id: uuid.UUID, status: str) -> int:
    return (
        db.query(ServiceJob)
        .filter(ServiceJob.contract_id == contract_id, ServiceJob.status == status)
        .delete(synchronize_session="fetch")
    )


def load_jobs(db: Session, job_ids: Sequence[uuid.UUID]) -> List[ServiceJob]:
    """Jobs by id with contract, customer, project and assignee loaded, earliest first."""
    if not job_ids:
        return []
    return (
        db.query(ServiceJob)
        .options(
            joinedload(ServiceJob.contract),
            joinedload(ServiceJob.customer),
            joinedload(ServiceJob.project),
            joinedload(ServiceJob.assigned_user),
            joinedload(ServiceJob.assigned_supplier),
        )
        .filter(ServiceJob.id.in_(list(job_ids)))
        .order_by(ServiceJob.scheduled_date.asc())
        .all()
    )
