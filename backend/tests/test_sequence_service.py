from datetime import datetime

from saleflow.domain import counters
from saleflow.services import sequence_service


def test_first_value_is_one_then_increments(db_session):
    assert sequence_service.next_value("invoices") == 1
    assert sequence_service.next_value("invoices") == 2
    assert sequence_service.next_value("other") == 1


def test_daily_counter_resets_at_local_midnight(db_session):
    day_one = datetime(2024, 3, 15, 10, 0)
    # 21:00 UTC is midnight in Nairobi
    day_two = datetime(2024, 3, 15, 21, 0)

    assert sequence_service.next_value("d", counters.DAILY, now=day_one) == 1
    assert sequence_service.next_value("d", counters.DAILY, now=day_one) == 2
    assert sequence_service.next_value("d", counters.DAILY, now=day_two) == 1
    assert sequence_service.next_value("d", counters.DAILY, now=day_two) == 2


def test_never_counter_does_not_reset(db_session):
    sequence_service.next_value("n", now=datetime(2020, 1, 1))
    assert sequence_service.next_value("n", now=datetime(2030, 1, 1)) == 2


def test_receipt_and_order_numbers(db_session):
    now = datetime(2024, 3, 15, 9, 0)
    assert sequence_service.next_receipt_number(now=now) == "RCP24031500001"
    assert sequence_service.next_receipt_number(now=now) == "RCP24031500002"
    assert sequence_service.next_order_number(now=now) == "ORD240300001"


def test_allocate_commits_and_peek_reads(db_session):
    assert sequence_service.peek("standalone") is None
    sequence_service.allocate("standalone")
    sequence_service.allocate("standalone")
    db_session.rollback()

    state = sequence_service.peek("standalone")
    assert state["seq"] == 2
    assert state["reset_period"] == counters.NEVER
