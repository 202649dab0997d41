"""
Seed the local database with servicing roles, sample staff, customers,
projects and suppliers.

Usage:
  python scripts/seed_test_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (username/email for users, numbers for
customers, projects and suppliers).
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from servicehub.db import SessionLocal, Base, engine
from servicehub.models.models import (
    User,
    Role,
    Customer,
    Project,
    Supplier,
)
from servicehub.auth.security import get_password_hash


SERVICING_ROLES = {
    "SUPERADMIN": "Super administrator",
    "ADMIN": "Administrator",
    "PROJECT_MANAGER": "Project manager",
    "FINANCE": "Finance",
    "STAFF": "Field staff",
}


def ensure_role(session, name: str, description: str = "") -> Role:
    role = session.query(Role).filter(Role.name == name).first()
    if role:
        if description and role.description != description:
            role.description = description
            session.add(role)
        return role
    role = Role(name=name, description=description or name.title())
    session.add(role)
    session.flush()
    return role


def ensure_user(session, username: str, email: str, password: str, roles: list, first_name: Optional[str] = None, last_name: Optional[str] = None) -> User:
    user = session.query(User).filter((User.username == username) | (User.email == email)).first()
    role_rows = session.query(Role).filter(Role.name.in_(roles)).all()
    if user:
        user.username = username
        user.email = email
        # Keep an existing password
        if not getattr(user, "password_hash", None):
            user.password_hash = get_password_hash(password)
        user.roles = role_rows
        session.add(user)
        session.flush()
        return user
    user = User(
        username=username,
        email=email,
        first_name=first_name or username.split(".")[0].title(),
        last_name=last_name or username.split(".")[-1].title(),
        password_hash=get_password_hash(password),
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    user.roles = role_rows
    session.add(user)
    session.flush()
    return user


def ensure_customer(session, customer_number: str, name: str, **kwargs) -> Customer:
    row = session.query(Customer).filter(Customer.customer_number == customer_number).first()
    if row:
        row.name = name
        for k, v in kwargs.items():
            if hasattr(row, k):
                setattr(row, k, v)
        session.add(row)
        session.flush()
        return row
    row = Customer(
        customer_number=customer_number,
        name=name,
        created_at=datetime.now(timezone.utc),
        **{k: v for k, v in kwargs.items() if hasattr(Customer, k)}
    )
    session.add(row)
    session.flush()
    return row


def ensure_project(session, project_number: str, name: str, customer_id: Optional[uuid.UUID] = None, **kwargs) -> Project:
    row = session.query(Project).filter(Project.project_number == project_number).first()
    if row:
        row.name = name
        row.customer_id = customer_id
        session.add(row)
        session.flush()
        return row
    row = Project(
        project_number=project_number,
        name=name,
        customer_id=customer_id,
        status=kwargs.get("status", "Active"),
        created_at=datetime.now(timezone.utc),
    )
    session.add(row)
    session.flush()
    return row


def ensure_supplier(session, supplier_number: str, name: str, **kwargs) -> Supplier:
    row = session.query(Supplier).filter(Supplier.supplier_number == supplier_number).first()
    if row:
        row.name = name
        for k, v in kwargs.items():
            if hasattr(row, k):
                setattr(row, k, v)
        session.add(row)
        session.flush()
        return row
    row = Supplier(
        supplier_number=supplier_number,
        name=name,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        **{k: v for k, v in kwargs.items() if hasattr(Supplier, k)}
    )
    session.add(row)
    session.flush()
    return row


def seed(session) -> None:
    for name, description in SERVICING_ROLES.items():
        ensure_role(session, name, description)

    ensure_user(session, "admin.user", "admin@example.com", "TestAdmin123!", ["SUPERADMIN"])
    ensure_user(session, "paula.manager", "paula.manager@example.com", "TestUser123!", ["PROJECT_MANAGER"])
    ensure_user(session, "fred.finance", "fred.finance@example.com", "TestUser123!", ["FINANCE"])
    ensure_user(session, "tom.tech", "tom.tech@example.com", "TestUser123!", ["STAFF"])

    acme = ensure_customer(session, "C-0001", "ACME Corp", email="facilities@acme.example", phone="604-555-1000", contact_person="Alice Manager")
    ensure_customer(session, "C-0002", "Globex Residential", email="office@globex.example")
    ensure_project(session, "P-0001", "ACME Head Office Fit-out", customer_id=acme.id)

    ensure_supplier(session, "S-0001", "CoolAir HVAC", email="dispatch@coolair.example", phone="604-555-2000", contact_person="Carl Cool")
    ensure_supplier(session, "S-0002", "Sparky Electrical", email="jobs@sparky.example")


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        seed(session)
        session.commit()
        print("Seed complete: roles, users, customers, projects and suppliers")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
