"""Plan Store reads: last-known fallback and its bounded cache."""
import pytest
from sqlalchemy.exc import OperationalError

from legalinsight.core.errors import TransientQueryError
from legalinsight.features.plans import service as plan_store
from legalinsight.features.plans.service import get_plan_record
from legalinsight.models.plan import PlanTier
from legalinsight.tests.factories import give_plan


def _store_down(monkeypatch):
    def unavailable():
        raise OperationalError("SELECT user_plans", {}, Exception("connection refused"))

    monkeypatch.setattr(plan_store, "get_db_session", unavailable)


def test_failed_read_serves_the_last_known_plan(clock, monkeypatch, caplog):
    give_plan("user_b", PlanTier.BASIC, started_at=clock.now())
    fresh = get_plan_record("user_b")

    _store_down(monkeypatch)
    with caplog.at_level("WARNING"):
        stale = get_plan_record("user_b")

    assert stale == fresh
    assert stale.plan_id is PlanTier.BASIC
    assert "serving last known plan" in caplog.text


def test_failed_read_without_a_cached_plan_raises(clock, monkeypatch):
    _store_down(monkeypatch)

    with pytest.raises(TransientQueryError):
        get_plan_record("user_never_read")


def test_missing_record_is_not_served_from_cache(clock, monkeypatch):
    get_plan_record("user_u")

    _store_down(monkeypatch)
    with pytest.raises(TransientQueryError):
        get_plan_record("user_u")


def test_cache_evicts_least_recently_read_users(clock, monkeypatch):
    monkeypatch.setattr(plan_store, "PLAN_CACHE_MAX_ENTRIES", 2)
    for user_id in ("user_a", "user_b", "user_c"):
        give_plan(user_id, PlanTier.PREMIUM, started_at=clock.now())

    get_plan_record("user_a")
    get_plan_record("user_b")
    get_plan_record("user_a")
    get_plan_record("user_c")

    assert list(plan_store._last_known_plans) == ["user_a", "user_c"]

    _store_down(monkeypatch)
    assert get_plan_record("user_a").plan_id is PlanTier.PREMIUM
    with pytest.raises(TransientQueryError):
        get_plan_record("user_b")
