from datetime import datetime

from servicehub.services.contract_numbers import next_contract_number


def test_first_contract_number(db, seeded):
    assert next_contract_number(db, now=datetime(2025, 3, 5)) == "CS-25-03-0001"


def test_running_number_continues_across_months(db, make_contract):
    make_contract()
    contract = make_contract()
    contract.contract_no = "CS-24-12-0007"
    db.commit()

    assert next_contract_number(db, now=datetime(2025, 3, 5)) == "CS-25-03-0008"


def test_unrecognised_numbers_are_ignored(db, make_contract):
    contract = make_contract()
    contract.contract_no = "LEGACY-42"
    db.commit()

    assert next_contract_number(db, now=datetime(2026, 11, 30)) == "CS-26-11-0001"
