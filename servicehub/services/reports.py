"""
Servicing report aggregation.
Summary counts, jobs by service type, assignee workload and customer activity
for jobs scheduled inside a date range.
"""
import math
from datetime import date, datetime, time
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from ..models.models import ServiceContract, ServiceJob
from .job_scheduler import CLOSED_STATUSES, JobStatus, is_overdue


def _display_name(user) -> str:
    name = " ".join(part for part in [user.first_name or "", user.last_name or ""] if part).strip()
    return name or user.username


def build_report(db: Session, start_date: date, end_date: date, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    jobs = (
        db.query(ServiceJob)
        .options(
            joinedload(ServiceJob.contract),
            joinedload(ServiceJob.customer),
            joinedload(ServiceJob.assigned_user),
            joinedload(ServiceJob.assigned_supplier),
        )
        .filter(ServiceJob.scheduled_date >= start_date, ServiceJob.scheduled_date <= end_date)
        .all()
    )
    contracts = (
        db.query(ServiceContract)
        .options(joinedload(ServiceContract.customer))
        .filter(
            or_(
                (ServiceContract.start_date >= start_date) & (ServiceContract.start_date <= end_date),
                ServiceContract.end_date >= start_date,
            )
        )
        .all()
    )

    summary = {
        "total_jobs": len(jobs),
        "completed_jobs": sum(1 for j in jobs if j.status in CLOSED_STATUSES),
        "scheduled_jobs": sum(1 for j in jobs if j.status == JobStatus.scheduled.value),
        "in_progress_jobs": sum(1 for j in jobs if j.status == JobStatus.in_progress.value),
        "overdue_jobs": sum(1 for j in jobs if is_overdue(j.scheduled_date, j.status, today)),
        "total_contracts": len(contracts),
        "active_contracts": sum(1 for c in contracts if c.status == "Active"),
    }

    by_service_type: Dict[str, Dict[str, int]] = {}
    for job in jobs:
        service_type = (job.contract.service_type if job.contract else None) or "Other"
        current = by_service_type.setdefault(service_type, {"count": 0, "completed": 0, "scheduled": 0})
        current["count"] += 1
        if job.status in CLOSED_STATUSES:
            current["completed"] += 1
        if job.status == JobStatus.scheduled.value:
            current["scheduled"] += 1

    by_assignee: Dict[str, Dict[str, Any]] = {}
    for job in jobs:
        if job.assigned_user_id and job.assigned_user:
            key = f"staff-{job.assigned_user_id}"
            kind, name = "Staff", _display_name(job.assigned_user)
        elif job.assigned_supplier_id and job.assigned_supplier:
            key = f"supplier-{job.assigned_supplier_id}"
            kind, name = "Supplier", job.assigned_supplier.name
        else:
            continue
        current = by_assignee.setdefault(
            key,
            {"type": kind, "name": name, "total_jobs": 0, "completed_jobs": 0, "total_completion_days": 0},
        )
        current["total_jobs"] += 1
        if job.status in CLOSED_STATUSES:
            current["completed_jobs"] += 1
            if job.completed_at:
                elapsed = job.completed_at.replace(tzinfo=None) - datetime.combine(job.scheduled_date, time.min)
                current["total_completion_days"] += math.ceil(elapsed.total_seconds() / 86400)

    jobs_by_assignee = []
    for entry in by_assignee.values():
        completed = entry["completed_jobs"]
        jobs_by_assignee.append({
            "type": entry["type"],
            "name": entry["name"],
            "total_jobs": entry["total_jobs"],
            "completed_jobs": completed,
            "average_completion_days": entry["total_completion_days"] / completed if completed else 0,
        })

    customers: Dict[str, Dict[str, Any]] = {}
    for job in jobs:
        current = customers.setdefault(str(job.customer_id), {
            "customer_name": job.customer.name if job.customer else "Unknown",
            "customer_number": (job.customer.customer_number if job.customer else None) or "N/A",
            "total_jobs": 0,
            "completed_jobs": 0,
            "active_contracts": 0,
        })
        current["total_jobs"] += 1
        if job.status in CLOSED_STATUSES:
            current["completed_jobs"] += 1
    for contract in contracts:
        current = customers.setdefault(str(contract.customer_id), {
            "customer_name": contract.customer.name if contract.customer else "Unknown",
            "customer_number": (contract.customer.customer_number if contract.customer else None) or "N/A",
            "total_jobs": 0,
            "completed_jobs": 0,
            "active_contracts": 0,
        })
        current["active_contracts"] += 1

    return {
        "summary": summary,
        "jobs_by_service_type": [{"service_type": k, **v} for k, v in by_service_type.items()],
        "jobs_by_assignee": jobs_by_assignee,
        "customer_activity": sorted(customers.values(), key=lambda c: c["total_jobs"], reverse=True),
    }
