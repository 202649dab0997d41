import re
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import ServiceContract


CONTRACT_NO_PATTERN = re.compile(r"^[A-Z]+-\d{2}-\d{2}-(\d+)$")


def next_contract_number(db: Session, now: Optional[datetime] = None) -> str:
    """
    Next contract number in PREFIX-YY-MM-NNNN form.

    The running number continues from the highest one already issued and does
    not reset with the month.
    """
    existing = db.query(ServiceContract.contract_no).filter(ServiceContract.contract_no.isnot(None)).all()
    running_numbers = []
    for row in existing:
        match = CONTRACT_NO_PATTERN.match(row[0] or "")
        if match:
            running_numbers.append(int(match.group(1)))

    now = now or datetime.now()
    next_running = (max(running_numbers) if running_numbers else 0) + 1
    contract_no = f"{settings.contract_number_prefix}-{now:%y}-{now:%m}-{next_running:04d}"

    while db.query(ServiceContract).filter(ServiceContract.contract_no == contract_no).first():
        next_running += 1
        contract_no = f"{settings.contract_number_prefix}-{now:%y}-{now:%m}-{next_running:04d}"
    return contract_no
