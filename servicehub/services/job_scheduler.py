"""
Service contract job scheduling.

Expands a contract window into visit dates, turns those dates into ServiceJob
rows and holds the job status workflow. Dates are naive local calendar dates
throughout; no timezone conversion is applied.

No per-contract locking is done here. Two regenerations of the same contract
running at once can interleave and leave duplicate jobs behind; callers that
need stronger guarantees must serialize requests per contract themselves.
"""
import enum
import uuid
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import ServiceContract, ServiceJob
from . import servicing_store as store
from .errors import ValidationError


logger = structlog.get_logger(__name__)


class ServiceFrequency(str, enum.Enum):
    monthly = "Monthly"
    quarterly = "Quarterly"
    bi_annual = "BiAnnual"
    annual = "Annual"
    custom = "Custom"


class JobStatus(str, enum.Enum):
    scheduled = "Scheduled"
    in_progress = "InProgress"
    completed = "Completed"
    endorsed = "Endorsed"


class AssignedToType(str, enum.Enum):
    staff = "Staff"
    supplier = "Supplier"


# Months between visits when jobs are generated for a contract
GENERATION_INTERVALS: Dict[ServiceFrequency, int] = {
    ServiceFrequency.monthly: 1,
    ServiceFrequency.quarterly: 3,
    ServiceFrequency.bi_annual: 6,
    ServiceFrequency.annual: 12,
    ServiceFrequency.custom: 12,
}

# The suggested-dates preview treats Custom as quarterly, unlike generation.
# Both tables are kept until the intended Custom cadence is confirmed.
PREVIEW_INTERVALS: Dict[ServiceFrequency, int] = {
    **GENERATION_INTERVALS,
    ServiceFrequency.custom: 3,
}

FALLBACK_INTERVAL_MONTHS = 1

# Upper bound on dates produced by one expansion, whatever the window size
MAX_SCHEDULED_DATES = 50

# Preview horizons count a month as 30 days
DAYS_PER_HORIZON_MONTH = 30

CLOSED_STATUSES = frozenset({JobStatus.completed.value, JobStatus.endorsed.value})

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    JobStatus.scheduled.value: frozenset({JobStatus.in_progress.value}),
    JobStatus.in_progress.value: frozenset({JobStatus.completed.value}),
    JobStatus.completed.value: frozenset({JobStatus.endorsed.value}),
    JobStatus.endorsed.value: frozenset(),
}


class RegenerationResult(NamedTuple):
    jobs_generated: int
    jobs: List[ServiceJob]
    jobs_cleared: int = 0


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def interval_months(frequency, intervals: Optional[Dict[ServiceFrequency, int]] = None) -> int:
    """Month step for a frequency; unknown values fall back to monthly."""
    table = intervals if intervals is not None else GENERATION_INTERVALS
    try:
        return table[ServiceFrequency(frequency)]
    except ValueError:
        logger.warning(
            "unknown_frequency",
            frequency=frequency,
            fallback_months=FALLBACK_INTERVAL_MONTHS,
        )
        return FALLBACK_INTERVAL_MONTHS


def expand_schedule_dates(
    start_date: Union[date, datetime],
    end_date: Union[date, datetime],
    frequency,
    max_horizon_months: Optional[int] = None,
    *,
    intervals: Optional[Dict[ServiceFrequency, int]] = None,
    today: Optional[date] = None,
) -> List[date]:
    """
    Expand a contract window into ascending visit dates.

    Args:
        start_date: First visit, always emitted when inside the bound
        end_date: Last day of the window (inclusive)
        frequency: ServiceFrequency value; unknown strings step monthly
        max_horizon_months: Optional cap relative to today, in 30-day months
        intervals: Interval table, GENERATION_INTERVALS unless given
        today: Reference day for the horizon (defaults to date.today())

    Returns:
        Dates starting at start_date, each one interval after the previous,
        never past the bound and never more than MAX_SCHEDULED_DATES of them.
        Month steps clamp to the last day of shorter months (31 Jan + 3 months
        is 30 Apr).
    """
    start = _as_date(start_date)
    bound = _as_date(end_date)
    step = interval_months(frequency, intervals)

    if max_horizon_months is not None:
        reference = _as_date(today) if today else date.today()
        horizon = reference + timedelta(days=max_horizon_months * DAYS_PER_HORIZON_MONTH)
        bound = min(bound, horizon)

    dates: List[date] = []
    current = start
    while current <= bound and len(dates) < MAX_SCHEDULED_DATES:
        dates.append(current)
        current = current + relativedelta(months=step)
    return dates


def suggest_schedule_dates(
    start_date: Union[date, datetime],
    end_date: Union[date, datetime],
    frequency,
    months: Optional[int] = None,
    today: Optional[date] = None,
) -> List[date]:
    """Read-only preview of upcoming visit dates for a contract."""
    if months is None:
        months = settings.suggested_months_default
    return expand_schedule_dates(
        start_date,
        end_date,
        frequency,
        max_horizon_months=months,
        intervals=PREVIEW_INTERVALS,
        today=today,
    )


def parse_schedule_dates(values: Iterable) -> List[date]:
    """
    Parse caller supplied dates, rejecting the whole batch on the first bad value.

    Accepts date objects and full ISO strings; any time part must itself be
    valid and is then dropped without timezone conversion.
    """
    parsed: List[date] = []
    for value in values:
        if isinstance(value, (date, datetime)):
            parsed.append(_as_date(value))
            continue
        text = str(value).strip() if value is not None else ""
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed.append(datetime.fromisoformat(text).date())
        except ValueError as exc:
            raise ValidationError(f"Invalid date: {value}") from exc
    return parsed


def resolve_assignment(
    contract: ServiceContract,
    assign_to_supplier: bool = False,
) -> Tuple[Optional[str], Optional[uuid.UUID], Optional[uuid.UUID]]:
    """Return (assigned_to_type, assigned_user_id, assigned_supplier_id) for new jobs."""
    if not assign_to_supplier:
        return AssignedToType.staff.value, contract.created_by_id, None
    links = contract.supplier_links or []
    if not links:
        logger.info("no_linked_supplier", contract_id=str(contract.id))
        return None, None, None
    return AssignedToType.supplier.value, None, links[0].supplier_id


def materialize_jobs(
    db: Session,
    contract: ServiceContract,
    dates: Iterable[date],
    assign_to_supplier: bool = False,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[ServiceJob]:
    """
    Build one Scheduled job per date and bulk insert them.

    Nothing is committed here; the caller's transaction decides whether the
    whole batch becomes visible. Calling twice with the same dates creates
    duplicates.
    """
    now = now or datetime.utcnow()
    assigned_to_type, assigned_user_id, assigned_supplier_id = resolve_assignment(contract, assign_to_supplier)
    jobs = [
        ServiceJob(
            id=uuid.uuid4(),
            contract_id=contract.id,
            customer_id=contract.customer_id,
            project_id=contract.project_id,
            scheduled_date=_as_date(d),
            status=JobStatus.scheduled.value,
            assigned_to_type=assigned_to_type,
            assigned_user_id=assigned_user_id,
            assigned_supplier_id=assigned_supplier_id,
            completion_notes=notes or None,
            created_at=now,
            updated_at=now,
        )
        for d in dates
    ]
    if jobs:
        store.bulk_insert_jobs(db, jobs)
    return jobs


def generate_initial_schedule(db: Session, contract: ServiceContract) -> List[ServiceJob]:
    """Jobs for a freshly created contract, inside the creation transaction."""
    dates = expand_schedule_dates(contract.start_date, contract.end_date, contract.frequency)
    jobs = materialize_jobs(db, contract, dates)
    logger.info("initial_schedule_generated", contract_id=str(contract.id), count=len(jobs))
    return jobs


def regenerate_schedule(
    db: Session,
    contract_id,
    explicit_dates: Iterable,
    clear_existing: bool = False,
    assign_to_supplier: bool = False,
    notes: Optional[str] = None,
) -> RegenerationResult:
    """
    Replace or extend a contract's schedule with explicit dates.

    All dates are validated before anything is written. When clear_existing is
    set only Scheduled jobs are removed; started, completed and endorsed jobs
    are kept. Delete and insert commit together; database errors roll back and
    propagate unchanged.
    """
    contract = store.get_contract(db, contract_id)
    dates = parse_schedule_dates(explicit_dates)

    cleared = 0
    try:
        if clear_existing:
            cleared = store.delete_jobs_by_status(db, contract.id, JobStatus.scheduled.value)
        jobs = materialize_jobs(db, contract, dates, assign_to_supplier=assign_to_supplier, notes=notes)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    created = store.load_jobs(db, [job.id for job in jobs])
    logger.info(
        "schedule_regenerated",
        contract_id=str(contract.id),
        cleared=cleared,
        count=len(created),
        assign_to_supplier=assign_to_supplier,
    )
    return RegenerationResult(jobs_generated=len(created), jobs=created, jobs_cleared=cleared)


def is_overdue(scheduled_date: Union[date, datetime], status: str, today: Optional[date] = None) -> bool:
    """A job is overdue when its day has passed and it is not completed or endorsed."""
    if status in CLOSED_STATUSES:
        return False
    reference = _as_date(today) if today else date.today()
    return _as_date(scheduled_date) < reference


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def apply_status(
    job: ServiceJob,
    status: str,
    completed_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> ServiceJob:
    """
    Set a job's status and keep completed_at consistent with it.

    Completed stamps completed_at (an explicit value wins over now); Endorsed
    keeps the existing stamp; any other status clears it. Whether the move is
    allowed is checked by the caller with can_transition.
    """
    now = now or datetime.utcnow()
    job.status = status
    if status == JobStatus.completed.value:
        job.completed_at = completed_at or job.completed_at or now
    elif status == JobStatus.endorsed.value:
        if completed_at:
            job.completed_at = completed_at
    else:
        job.completed_at = None
    job.updated_at = now
    return job


def reschedule_job(job: ServiceJob, new_date: Union[date, datetime], now: Optional[datetime] = None) -> ServiceJob:
    """Move a job to another day; a job already in progress goes back to Scheduled."""
    job.scheduled_date = _as_date(new_date)
    if job.status == JobStatus.in_progress.value:
        job.status = JobStatus.scheduled.value
    job.updated_at = now or datetime.utcnow()
    return job
