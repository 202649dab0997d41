from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import VIEW_ROLES, require_roles
from ..db import get_db
from ..services.reports import build_report


router = APIRouter(prefix="/servicing/reports", tags=["servicing"])


@router.get("")
def servicing_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(*VIEW_ROLES)),
):
    if not start_date or not end_date:
        raise HTTPException(status_code=400, detail="Start date and end date are required")
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="End date must not be before start date")
    return build_report(db, start_date, end_date)
