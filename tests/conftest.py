import os
import tempfile
from datetime import date, datetime
from types import SimpleNamespace

# Settings are read at import time, so the environment is prepared first
_TMP_DIR = tempfile.mkdtemp(prefix="servicehub-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP_DIR, "test.db")
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from fastapi.testclient import TestClient

from servicehub.auth.security import create_access_token
from servicehub.db import Base, SessionLocal, engine
from servicehub.main import app
from servicehub.models.models import ServiceContract, ServiceContractSupplier
from scripts.seed_test_data import (
    SERVICING_ROLES,
    ensure_customer,
    ensure_project,
    ensure_role,
    ensure_supplier,
    ensure_user,
)


@pytest.fixture()
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seeded(db):
    for name, description in SERVICING_ROLES.items():
        ensure_role(db, name, description)
    data = SimpleNamespace(
        superadmin=ensure_user(db, "sam.super", "sam@example.com", "Secret123!", ["SUPERADMIN"]),
        admin=ensure_user(db, "ada.admin", "ada@example.com", "Secret123!", ["ADMIN"]),
        manager=ensure_user(db, "paula.manager", "paula@example.com", "Secret123!", ["PROJECT_MANAGER"]),
        finance=ensure_user(db, "fred.finance", "fred@example.com", "Secret123!", ["FINANCE"]),
        staff=ensure_user(db, "tom.tech", "tom@example.com", "Secret123!", ["STAFF"]),
    )
    data.customer = ensure_customer(db, "C-0001", "ACME Corp", email="facilities@acme.example")
    data.project = ensure_project(db, "P-0001", "ACME Head Office", customer_id=data.customer.id)
    data.supplier = ensure_supplier(db, "S-0001", "CoolAir HVAC", email="dispatch@coolair.example")
    data.other_supplier = ensure_supplier(db, "S-0002", "Sparky Electrical")
    db.commit()
    return data


@pytest.fixture()
def client():
    return TestClient(app)


def auth_headers(user):
    token = create_access_token(str(user.id), roles=[r.name for r in user.roles])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def make_contract(db, seeded):
    """Insert a contract directly, optionally linking suppliers in the given order."""
    counter = {"n": 0}

    def _make(start=date(2025, 1, 15), end=date(2025, 12, 15), frequency="Monthly", suppliers=(), **kwargs):
        counter["n"] += 1
        contract = ServiceContract(
            contract_no=f"CS-25-01-{counter['n']:04d}",
            title=kwargs.pop("title", "HVAC maintenance"),
            customer_id=seeded.customer.id,
            project_id=kwargs.pop("project_id", seeded.project.id),
            service_type=kwargs.pop("service_type", "HVAC"),
            frequency=frequency,
            start_date=start,
            end_date=end,
            created_by_id=kwargs.pop("created_by_id", seeded.manager.id),
            **kwargs,
        )
        db.add(contract)
        db.flush()
        linked_at = datetime(2025, 1, 1, 9, 0, 0)
        for i, supplier in enumerate(suppliers):
            db.add(ServiceContractSupplier(
                contract_id=contract.id,
                supplier_id=supplier.id,
                position=i,
                linked_at=linked_at,
            ))
        db.commit()
        db.refresh(contract)
        return contract

    return _make


@pytest.fixture()
def headers():
    return auth_headers
