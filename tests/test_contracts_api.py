import re
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from servicehub.models.models import ServiceJob


def _payload(seeded, **overrides):
    payload = {
        "title": "Quarterly HVAC service",
        "customer_id": str(seeded.customer.id),
        "project_id": str(seeded.project.id),
        "service_type": "HVAC",
        "frequency": "Monthly",
        "start_date": "2025-01-15",
        "end_date": "2025-12-15",
        "supplier_ids": [str(seeded.supplier.id)],
    }
    payload.update(overrides)
    return payload


def _create(client, headers, seeded, user=None, **overrides):
    resp = client.post("/servicing/contracts", json=_payload(seeded, **overrides), headers=headers(user or seeded.manager))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_create_contract_generates_initial_schedule(client, headers, seeded):
    data = _create(client, headers, seeded)

    assert re.match(r"^CS-\d{2}-\d{2}-0001$", data["contract_no"])
    assert data["job_count"] == 12
    assert data["status"] == "Active"
    assert [s["name"] for s in data["suppliers"]] == ["CoolAir HVAC"]

    detail = client.get(f"/servicing/contracts/{data['id']}", headers=headers(seeded.finance)).json()
    assert len(detail["jobs"]) == 12
    assert detail["jobs"][0]["scheduled_date"] == "2025-01-15"
    assert detail["jobs"][-1]["scheduled_date"] == "2025-12-15"
    assert {j["assigned_user"]["id"] for j in detail["jobs"]} == {str(seeded.manager.id)}
    assert {j["status"] for j in detail["jobs"]} == {"Scheduled"}


def test_contract_numbers_increment(client, headers, seeded):
    first = _create(client, headers, seeded)
    second = _create(client, headers, seeded, title="Second site")
    assert first["contract_no"].endswith("-0001")
    assert second["contract_no"].endswith("-0002")


def test_create_contract_validation(client, headers, seeded):
    h = headers(seeded.manager)
    cases = [
        ({"title": "  "}, "Contract title is required"),
        ({"customer_id": None}, "Customer is required"),
        ({"frequency": ""}, "Service type and frequency are required"),
        ({"end_date": None}, "Start and end dates are required"),
        ({"end_date": "2025-01-15"}, "End date must be after start date"),
    ]
    for overrides, message in cases:
        resp = client.post("/servicing/contracts", json=_payload(seeded, **overrides), headers=h)
        assert resp.status_code == 400
        assert resp.json()["detail"] == message


def test_create_contract_requires_manager_role(client, headers, seeded):
    assert client.post("/servicing/contracts", json=_payload(seeded)).status_code == 401
    resp = client.post("/servicing/contracts", json=_payload(seeded), headers=headers(seeded.finance))
    assert resp.status_code == 403


def test_unknown_supplier_is_rejected(client, headers, seeded, db):
    resp = client.post(
        "/servicing/contracts",
        json=_payload(seeded, supplier_ids=["00000000-0000-0000-0000-000000000001"]),
        headers=headers(seeded.manager),
    )
    assert resp.status_code == 404
    assert db.query(ServiceJob).count() == 0


def test_list_contracts_filters(client, headers, seeded):
    _create(client, headers, seeded, service_type="HVAC")
    _create(client, headers, seeded, service_type="Electrical", title="Switchboard checks")

    h = headers(seeded.finance)
    assert len(client.get("/servicing/contracts", headers=h).json()) == 2
    electrical = client.get("/servicing/contracts", params={"service_type": "Electrical"}, headers=h).json()
    assert [c["title"] for c in electrical] == ["Switchboard checks"]
    assert client.get("/servicing/contracts", params={"q": "switch"}, headers=h).json()[0]["service_type"] == "Electrical"
    assert client.get("/servicing/contracts", headers=headers(seeded.staff)).status_code == 403


def test_suggested_dates_preview(client, headers, seeded):
    start = date.today().replace(day=1)
    contract = _create(
        client, headers, seeded,
        frequency="Custom",
        start_date=start.isoformat(),
        end_date=(start + relativedelta(years=3)).isoformat(),
    )

    resp = client.get(f"/servicing/contracts/{contract['id']}/jobs/generate", headers=headers(seeded.staff))
    assert resp.status_code == 200
    body = resp.json()

    horizon = date.today() + timedelta(days=360)
    expected = []
    current = start
    while current <= horizon:
        expected.append(current.isoformat())
        current = current + relativedelta(months=3)
    assert body["suggested_dates"] == expected
    assert body["total_suggested"] == len(expected)
    assert body["contract"]["frequency"] == "Custom"


def test_regenerate_keeps_started_jobs(client, headers, seeded):
    contract = _create(client, headers, seeded)
    h = headers(seeded.manager)
    detail = client.get(f"/servicing/contracts/{contract['id']}", headers=h).json()
    started = detail["jobs"][0]["id"]
    assert client.post(f"/servicing/jobs/{started}/start", headers=h).status_code == 200

    resp = client.post(
        f"/servicing/contracts/{contract['id']}/jobs/generate",
        json={"scheduled_dates": ["2026-01-15", "2026-02-15"], "clear_existing": True},
        headers=h,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["jobs_generated"] == 2
    assert body["jobs_cleared"] == 11
    assert body["message"] == "Generated 2 jobs successfully"
    assert [j["scheduled_date"] for j in body["jobs"]] == ["2026-01-15", "2026-02-15"]

    jobs = client.get(f"/servicing/contracts/{contract['id']}", headers=h).json()["jobs"]
    assert len(jobs) == 3
    assert [j["status"] for j in jobs] == ["InProgress", "Scheduled", "Scheduled"]


def test_empty_regeneration_clears_scheduled_jobs_only(client, headers, seeded):
    contract = _create(client, headers, seeded)
    h = headers(seeded.manager)
    jobs = client.get(f"/servicing/contracts/{contract['id']}", headers=h).json()["jobs"]
    client.post(f"/servicing/jobs/{jobs[0]['id']}/start", headers=h)
    client.post(f"/servicing/jobs/{jobs[1]['id']}/start", headers=h)
    client.post(f"/servicing/jobs/{jobs[1]['id']}/complete", headers=h)

    resp = client.post(
        f"/servicing/contracts/{contract['id']}/jobs/generate",
        json={"scheduled_dates": [], "clear_existing": True},
        headers=h,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["jobs_generated"] == 0
    assert body["jobs_cleared"] == 10
    assert body["jobs"] == []

    remaining = client.get(f"/servicing/contracts/{contract['id']}", headers=h).json()["jobs"]
    assert [j["status"] for j in remaining] == ["InProgress", "Completed"]


def test_regenerate_with_supplier_assignment(client, headers, seeded):
    contract = _create(client, headers, seeded)
    resp = client.post(
        f"/servicing/contracts/{contract['id']}/jobs/generate",
        json={"scheduled_dates": ["2026-03-01"], "assign_to_supplier": True, "notes": "Roof access"},
        headers=headers(seeded.manager),
    )
    job = resp.json()["jobs"][0]
    assert job["assigned_to_type"] == "Supplier"
    assert job["assigned_supplier"]["name"] == "CoolAir HVAC"
    assert job["assigned_user"] is None
    assert job["completion_notes"] == "Roof access"


def test_first_supplier_follows_request_order(client, headers, seeded):
    contract = _create(
        client, headers, seeded,
        supplier_ids=[str(seeded.other_supplier.id), str(seeded.supplier.id)],
    )
    h = headers(seeded.manager)
    assert [s["name"] for s in contract["suppliers"]] == ["Sparky Electrical", "CoolAir HVAC"]

    def _assigned_supplier():
        resp = client.post(
            f"/servicing/contracts/{contract['id']}/jobs/generate",
            json={"scheduled_dates": ["2026-03-01"], "assign_to_supplier": True},
            headers=h,
        )
        return resp.json()["jobs"][0]["assigned_supplier"]["name"]

    assert _assigned_supplier() == "Sparky Electrical"

    reordered = client.put(
        f"/servicing/contracts/{contract['id']}",
        json={"supplier_ids": [str(seeded.supplier.id), str(seeded.other_supplier.id)]},
        headers=h,
    ).json()
    assert [s["name"] for s in reordered["suppliers"]] == ["CoolAir HVAC", "Sparky Electrical"]
    assert _assigned_supplier() == "CoolAir HVAC"


def test_regenerate_rejects_bad_date_without_writing(client, headers, seeded):
    contract = _create(client, headers, seeded)
    h = headers(seeded.manager)
    resp = client.post(
        f"/servicing/contracts/{contract['id']}/jobs/generate",
        json={"scheduled_dates": ["2026-01-01", "bad"], "clear_existing": True},
        headers=h,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid date: bad"
    assert len(client.get(f"/servicing/contracts/{contract['id']}", headers=h).json()["jobs"]) == 12


def test_regenerate_errors(client, headers, seeded):
    h = headers(seeded.manager)
    missing = client.post(
        "/servicing/contracts/00000000-0000-0000-0000-000000000001/jobs/generate",
        json={"scheduled_dates": ["2026-01-01"]},
        headers=h,
    )
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Contract not found"

    contract = _create(client, headers, seeded)
    no_dates = client.post(f"/servicing/contracts/{contract['id']}/jobs/generate", json={"clear_existing": True}, headers=h)
    assert no_dates.status_code == 422

    forbidden = client.post(
        f"/servicing/contracts/{contract['id']}/jobs/generate",
        json={"scheduled_dates": ["2026-01-01"]},
        headers=headers(seeded.finance),
    )
    assert forbidden.status_code == 403


def test_update_contract_replaces_suppliers_and_keeps_jobs(client, headers, seeded):
    contract = _create(client, headers, seeded)
    h = headers(seeded.admin)

    resp = client.put(
        f"/servicing/contracts/{contract['id']}",
        json={"title": "Renamed", "status": "Suspended", "supplier_ids": [str(seeded.other_supplier.id)]},
        headers=h,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["title"] == "Renamed"
    assert body["status"] == "Suspended"
    assert [s["name"] for s in body["suppliers"]] == ["Sparky Electrical"]
    assert body["job_count"] == 12

    bad = client.put(f"/servicing/contracts/{contract['id']}", json={"end_date": "2024-01-01"}, headers=h)
    assert bad.status_code == 400

    history = client.get(f"/servicing/contracts/{contract['id']}/history", headers=h).json()
    assert [entry["action"] for entry in history] == ["UPDATE", "CREATE"]
    assert history[0]["changes"]["title"] == {"before": "Quarterly HVAC service", "after": "Renamed"}


def test_delete_contract_is_superadmin_only(client, headers, seeded, db):
    contract = _create(client, headers, seeded)

    assert client.delete(f"/servicing/contracts/{contract['id']}", headers=headers(seeded.admin)).status_code == 403
    resp = client.delete(f"/servicing/contracts/{contract['id']}", headers=headers(seeded.superadmin))
    assert resp.status_code == 200

    assert client.get(f"/servicing/contracts/{contract['id']}", headers=headers(seeded.superadmin)).status_code == 404
    db.expire_all()
    assert db.query(ServiceJob).count() == 0
