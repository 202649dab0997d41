import uuid
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator


class ContractBase(BaseModel):
    title: Optional[str] = None
    customer_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None
    service_type: Optional[str] = None
    frequency: Optional[str] = None  # Monthly|Quarterly|BiAnnual|Annual|Custom
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    file_path: Optional[str] = None
    supplier_ids: List[uuid.UUID] = []

    @field_validator('title', 'service_type', 'frequency', 'file_path', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ContractCreate(ContractBase):
    pass


class ContractUpdate(ContractBase):
    status: Optional[str] = None  # Active|Suspended|Expired|Cancelled


class GenerateJobsRequest(BaseModel):
    scheduled_dates: List[str]  # ISO dates; validated as a batch by the scheduler
    clear_existing: bool = False
    assign_to_supplier: bool = False
    notes: Optional[str] = None


class JobCreate(BaseModel):
    contract_id: uuid.UUID
    scheduled_date: date
    assigned_to_type: str  # Staff|Supplier
    assigned_to_id: uuid.UUID
    completion_notes: Optional[str] = None


class JobUpdate(BaseModel):
    status: Optional[str] = None  # Scheduled|InProgress|Completed|Endorsed
    completion_notes: Optional[str] = None
    scheduled_date: Optional[date] = None
    completed_at: Optional[datetime] = None
