import unittest
from datetime import datetime

import pytest

from saleflow.domain import counters, loyalty, order_status, stock
from saleflow.errors import InvalidStatusTransition, ValidationError


NAIROBI = "Africa/Nairobi"


class OrderStatusTests(unittest.TestCase):
    def test_happy_path_is_allowed(self):
        path = [
            order_status.PENDING,
            order_status.CONFIRMED,
            order_status.PROCESSING,
            order_status.READY,
            order_status.OUT_FOR_DELIVERY,
            order_status.DELIVERED,
        ]
        for current, nxt in zip(path, path[1:]):
            order_status.validate_transition(current, nxt)

    def test_skipping_states_is_rejected(self):
        with self.assertRaises(InvalidStatusTransition) as ctx:
            order_status.validate_transition(order_status.PENDING, order_status.DELIVERED)
        self.assertEqual(ctx.exception.details["current_status"], "pending")
        self.assertEqual(ctx.exception.details["requested_status"], "delivered")

    def test_failed_delivery_can_be_retried(self):
        self.assertTrue(order_status.can_transition(order_status.FAILED, order_status.OUT_FOR_DELIVERY))

    def test_terminal_states_have_no_exits(self):
        for terminal in (order_status.DELIVERED, order_status.CANCELLED):
            self.assertTrue(order_status.is_terminal(terminal))
            for target in order_status.ALL_STATUSES:
                self.assertFalse(order_status.can_transition(terminal, target))

    def test_out_for_delivery_cannot_be_cancelled(self):
        self.assertFalse(order_status.can_transition(order_status.OUT_FOR_DELIVERY, order_status.CANCELLED))

    def test_unknown_status_has_no_edges(self):
        self.assertEqual(order_status.allowed_next("lost"), frozenset())


class LoyaltyTests(unittest.TestCase):
    def test_tier_requires_both_thresholds(self):
        self.assertEqual(loyalty.compute_tier(0, 0), loyalty.BRONZE)
        self.assertEqual(loyalty.compute_tier(60_000_00, 9), loyalty.BRONZE)
        self.assertEqual(loyalty.compute_tier(60_000_00, 10), loyalty.SILVER)
        self.assertEqual(loyalty.compute_tier(150_000_00, 25), loyalty.GOLD)
        self.assertEqual(loyalty.compute_tier(1_000_000_00, 50), loyalty.PLATINUM)

    def test_points_are_whole_units_of_one_hundred(self):
        self.assertEqual(loyalty.points_for_amount(99_99), 0)
        self.assertEqual(loyalty.points_for_amount(250_00), 2)
        self.assertEqual(loyalty.points_for_amount(-500_00), 0)

    def test_next_tier_requirement(self):
        req = loyalty.next_tier_requirement(loyalty.BRONZE, 20_000_00, 4)
        self.assertEqual(req, {"tier": loyalty.SILVER, "spent_needed_cents": 30_000_00, "orders_needed": 6})
        self.assertIsNone(loyalty.next_tier_requirement(loyalty.PLATINUM, 0, 0))


def test_daily_period_starts_at_local_midnight():
    # 22:00 UTC on the 15th is 01:00 on the 16th in Nairobi
    now = datetime(2024, 3, 15, 22, 0)
    assert counters.period_start(counters.DAILY, now, NAIROBI) == datetime(2024, 3, 15, 21, 0)


def test_monthly_and_yearly_period_start():
    now = datetime(2024, 3, 15, 12, 0)
    assert counters.period_start(counters.MONTHLY, now, NAIROBI) == datetime(2024, 2, 29, 21, 0)
    assert counters.period_start(counters.YEARLY, now, NAIROBI) == datetime(2023, 12, 31, 21, 0)
    assert counters.period_start(counters.NEVER, now, NAIROBI) is None


def test_needs_reset():
    now = datetime(2024, 3, 15, 12, 0)
    assert counters.needs_reset(counters.DAILY, None, now, NAIROBI)
    assert counters.needs_reset(counters.DAILY, datetime(2024, 3, 14, 20, 0), now, NAIROBI)
    assert not counters.needs_reset(counters.DAILY, datetime(2024, 3, 14, 21, 0), now, NAIROBI)
    assert not counters.needs_reset(counters.NEVER, None, now, NAIROBI)


def test_unknown_reset_period_rejected():
    with pytest.raises(ValidationError):
        counters.period_start("hourly", datetime(2024, 1, 1), NAIROBI)


def test_document_numbers_use_local_date():
    now = datetime(2024, 3, 15, 21, 30)
    assert counters.format_receipt_number(42, now, NAIROBI) == "RCP24031600042"
    assert counters.format_order_number(7, datetime(2024, 3, 31, 22, 0), NAIROBI) == "ORD240400007"


@pytest.mark.parametrize("movement_type,expected", [
    (stock.SALE, -3),
    (stock.DAMAGE, -3),
    (stock.TRANSFER, -3),
    (stock.PURCHASE, 3),
    (stock.RETURN, 3),
    (stock.ADJUSTMENT, 3),
])
def test_signed_delta(movement_type, expected):
    assert stock.signed_delta(movement_type, 3) == expected


@pytest.mark.parametrize("movement_type,quantity", [
    ("theft", 1),
    (stock.SALE, 0),
    (stock.SALE, -2),
    (stock.PURCHASE, 1.5),
])
def test_signed_delta_rejects_bad_input(movement_type, quantity):
    with pytest.raises(ValidationError):
        stock.signed_delta(movement_type, quantity)


def test_stock_status_bands():
    assert stock.stock_status(0, 5) == stock.OUT_OF_STOCK
    assert stock.stock_status(5, 5) == stock.LOW_STOCK
    assert stock.stock_status(15, 5) == stock.IN_STOCK
    assert stock.stock_status(16, 5) == stock.OVERSTOCK


def test_needs_reorder_prefers_reorder_point():
    assert stock.needs_reorder(8, 10, 2)
    assert not stock.needs_reorder(8, None, 2)
