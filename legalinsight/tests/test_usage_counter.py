"""Metering windows and windowed usage counts."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from legalinsight.core.clock import FixedClock
from legalinsight.core.config import settings
from legalinsight.features.documents.service import soft_delete_document
from legalinsight.features.entitlements.service import usage_summary
from legalinsight.features.usage import service as usage_service
from legalinsight.features.usage.service import count_usage, metering_window, remaining_credits
from legalinsight.models.entitlement import UNLIMITED
from legalinsight.models.plan import PlanTier
from legalinsight.tests.factories import add_documents, buy


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("plan_id", [PlanTier.FREE, PlanTier.PREMIUM])
def test_calendar_month_window(plan_id):
    start, end = metering_window(plan_id, utc(2025, 3, 25, 8), utc(2025, 3, 20))
    assert start == utc(2025, 3, 1)
    assert end == utc(2025, 4, 1)


@pytest.mark.parametrize("plan_id", [PlanTier.BASIC, PlanTier.PAY_PER_USE])
def test_basic_window_anchors_on_plan_start_within_the_month(plan_id):
    started = utc(2025, 3, 20, 9, 30)
    start, end = metering_window(plan_id, utc(2025, 3, 25), started)
    assert start == started
    assert end == utc(2025, 4, 1)


def test_basic_window_resets_on_the_next_calendar_month():
    start, end = metering_window(PlanTier.BASIC, utc(2025, 4, 5), utc(2025, 3, 20))
    assert start == utc(2025, 4, 1)
    assert end == utc(2025, 5, 1)


def test_basic_window_without_a_start_uses_the_month():
    start, _ = metering_window(PlanTier.BASIC, utc(2025, 3, 25), None)
    assert start == utc(2025, 3, 1)


def test_count_is_half_open_and_per_user():
    add_documents("user_a", utc(2025, 3, 1), 1)
    add_documents("user_a", utc(2025, 3, 31, 23, 59), 1)
    add_documents("user_a", utc(2025, 4, 1), 1)
    add_documents("user_b", utc(2025, 3, 15), 4)

    assert count_usage("user_a", PlanTier.FREE, utc(2025, 3, 1), utc(2025, 4, 1)) == 2
    assert count_usage("user_b", PlanTier.FREE, utc(2025, 3, 1), utc(2025, 4, 1)) == 4


def test_count_is_monotonic_within_a_window():
    window_start = utc(2025, 3, 1)
    for day in range(1, 20, 3):
        add_documents("user_a", utc(2025, 3, day, 10), 1)

    previous = 0
    for day in range(1, 32):
        current = count_usage("user_a", PlanTier.BASIC, window_start, utc(2025, 3, day, 23))
        assert current >= previous
        previous = current
    assert previous == 7


def test_premium_usage_is_never_counted():
    add_documents("user_a", utc(2025, 3, 5), 12)
    assert count_usage("user_a", PlanTier.PREMIUM, utc(2025, 3, 1), utc(2025, 4, 1)) == 0


def test_soft_deleted_documents_are_excluded_by_default(monkeypatch):
    docs = add_documents("user_a", utc(2025, 3, 5), 2)
    soft_delete_document("user_a", docs[0].id, clock=FixedClock(utc(2025, 3, 6)))

    assert count_usage("user_a", PlanTier.FREE, utc(2025, 3, 1), utc(2025, 4, 1)) == 1

    monkeypatch.setattr(settings, "USAGE_COUNT_INCLUDES_DELETED", True)
    assert count_usage("user_a", PlanTier.FREE, utc(2025, 3, 1), utc(2025, 4, 1)) == 2


def test_failed_count_fails_open_to_zero(monkeypatch, caplog):
    def broken_count(*args, **kwargs):
        raise OperationalError("SELECT count(*)", {}, Exception("connection reset"))

    monkeypatch.setattr(usage_service, "count_documents", broken_count)

    with caplog.at_level("WARNING"):
        assert count_usage("user_a", PlanTier.FREE, utc(2025, 3, 1), utc(2025, 4, 1)) == 0
    assert any("failing open" in record.getMessage() for record in caplog.records)


@pytest.mark.parametrize(
    "plan_id,used,ever_paid,expected",
    [
        (PlanTier.FREE, 0, False, 1),
        (PlanTier.FREE, 1, False, 0),
        (PlanTier.FREE, 0, True, 0),
        (PlanTier.BASIC, 3, True, 7),
        (PlanTier.BASIC, 14, True, 0),
        (PlanTier.PAY_PER_USE, 0, True, 1),
        (PlanTier.PAY_PER_USE, 1, True, 0),
        (PlanTier.PREMIUM, 500, True, UNLIMITED),
    ],
)
def test_remaining_credits(plan_id, used, ever_paid, expected):
    assert remaining_credits(plan_id, used, ever_paid) == expected


def test_basic_purchase_mid_month_counts_from_purchase():
    """Basic bought on day 10; three analyses by day 15 leave seven credits."""
    purchase_clock = FixedClock(utc(2025, 3, 10, 9))
    add_documents("user_v", utc(2025, 3, 4), 1)
    buy("user_v", PlanTier.BASIC, purchase_clock)

    add_documents("user_v", utc(2025, 3, 11), 1)
    add_documents("user_v", utc(2025, 3, 14), 2)

    summary = usage_summary("user_v", clock=FixedClock(utc(2025, 3, 15, 18)))

    assert summary.plan_id is PlanTier.BASIC
    assert summary.window_start == utc(2025, 3, 10, 9)
    assert summary.window_end == utc(2025, 4, 1)
    assert summary.used == 3
    assert summary.limit == 10
    assert summary.remaining_credits == 7
    assert summary.limit_reached is False


def test_usage_summary_after_month_rollover():
    buy("user_v", PlanTier.BASIC, FixedClock(utc(2025, 3, 20)))
    add_documents("user_v", utc(2025, 3, 25), 10)
    add_documents("user_v", utc(2025, 4, 2), 1)

    march = usage_summary("user_v", clock=FixedClock(utc(2025, 3, 28)))
    april = usage_summary("user_v", clock=FixedClock(utc(2025, 4, 5)))

    assert march.limit_reached is True
    assert march.remaining_credits == 0
    assert april.window_start == utc(2025, 4, 1)
    assert april.used == 1
    assert april.remaining_credits == 9
