"""Purchase ingestion: apply_purchase and the Gumroad webhook."""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from legalinsight.core.database import billing_events, get_db_session, purchases, user_plans
from legalinsight.core.errors import ConflictError, InvalidMappingError, ValidationError
from legalinsight.features.billing.gumroad import (
    GumroadSale,
    is_ping,
    map_product_to_plan,
    parse_body,
    parse_sale,
)
from legalinsight.features.billing.service import apply_purchase, process_gumroad_webhook
from legalinsight.features.notifications.service import list_notifications
from legalinsight.features.plans.service import get_plan_record
from legalinsight.features.purchases.service import has_ever_paid, list_purchases
from legalinsight.features.referrals.service import active_rewards
from legalinsight.features.users.service import get_or_create_user
from legalinsight.models.notification import NotificationKind
from legalinsight.models.plan import PlanTier
from legalinsight.models.purchase import PurchaseStatus
from legalinsight.tests.factories import buy, give_plan, grant_reward


def _sale(**overrides):
    payload = {
        "sale_id": "sale_123",
        "product_id": "SovSpZUABprtMPU0KmUksA==",
        "short_product_id": "ptlsqlp",
        "price": "10.00",
        "email": "Buyer@Example.com",
        "refunded": "false",
        "user_id": "user_buyer",
    }
    payload.update(overrides)
    return payload


def _count(table, *conditions):
    stmt = select(func.count()).select_from(table)
    for condition in conditions:
        stmt = stmt.where(condition)
    with get_db_session() as session:
        return session.execute(stmt).scalar()


class TestProductMapping:
    def _mapped(self, **overrides):
        return map_product_to_plan(parse_sale(_sale(**overrides)))

    def test_known_product_ids(self):
        assert self._mapped() is PlanTier.BASIC
        assert self._mapped(product_id="lWL2oynuKtJTYjAEEhmTsg==", price="30") is PlanTier.PREMIUM

    def test_short_product_id_fallback(self):
        assert self._mapped(product_id="unknown", short_product_id="jqkug", price="0") is PlanTier.PREMIUM

    @pytest.mark.parametrize("price,expected", [("9.98", PlanTier.BASIC), ("10.01", PlanTier.BASIC), ("29.99", PlanTier.PREMIUM)])
    def test_price_band_fallback(self, price, expected):
        assert self._mapped(product_id="unknown", short_product_id="", price=price) is expected

    def test_explicit_plan_wins(self):
        assert self._mapped(plan_id="pay-per-use") is PlanTier.PAY_PER_USE

    @pytest.mark.parametrize("overrides", [
        {"product_id": "unknown", "short_product_id": "", "price": "12.50"},
        {"plan_id": "free"},
        {"plan_id": "enterprise"},
    ])
    def test_unmappable(self, overrides):
        with pytest.raises(InvalidMappingError) as excinfo:
            self._mapped(**overrides)
        assert excinfo.value.status_code == 422


class TestPayloadParsing:
    def test_form_encoded_body(self):
        body = b"sale_id=abc&product_id=omxfm&price=30&refunded=true&email=a%40b.com"
        payload = parse_body(body, "application/x-www-form-urlencoded")
        sale = parse_sale(payload)
        assert sale.order_id == "abc"
        assert sale.refunded is True
        assert sale.email == "a@b.com"
        assert sale.event_key == "abc:refunded"

    def test_json_body(self):
        payload = parse_body(b'{"order_id": "o-1", "product_id": "omxfm", "refunded": true}', "application/json")
        sale = parse_sale(payload)
        assert sale.order_id == "o-1"
        assert sale.event_key == "o-1:refunded"

    def test_ping(self):
        assert is_ping({"type": "ping"}) is True
        assert is_ping(_sale()) is False

    @pytest.mark.parametrize("missing", ["sale_id", "product_id"])
    def test_required_fields(self, missing):
        payload = _sale()
        payload.pop(missing)
        with pytest.raises(ValidationError):
            parse_sale(payload)

    def test_malformed_bodies(self):
        with pytest.raises(ValidationError):
            parse_body(b"", "application/x-www-form-urlencoded")
        with pytest.raises(ValidationError):
            parse_body(b"{not json", "application/json")
        with pytest.raises(ValidationError, match="Malformed webhook payload"):
            parse_body(b"sale_id=\xff\xfe", "application/x-www-form-urlencoded")
        with pytest.raises(ValidationError):
            parse_sale(_sale(price="ten dollars"))

    def test_sale_defaults(self):
        sale = GumroadSale(
            order_id="o", product_id="p", short_product_id=None, amount=0.0,
            currency="USD", refunded=False, email=None, user_id=None, plan_id=None,
        )
        assert sale.event_type == "completed"


class TestApplyPurchase:
    def test_completed_purchase_sets_plan_and_expiry(self, clock):
        result = buy("user_a", PlanTier.BASIC, clock, order_id="order-1")

        assert result.applied is True
        record = get_plan_record("user_a")
        assert record.plan_id is PlanTier.BASIC
        assert record.started_at == clock.now()
        assert record.expires_at == clock.now() + timedelta(days=30)
        assert record.purchase_id == result.purchase.id
        assert has_ever_paid("user_a") is True

        kinds = [n.kind for n in list_notifications("user_a")]
        assert kinds == [NotificationKind.PURCHASE_APPLIED]

    def test_explicit_expiry_is_kept(self, clock):
        expires_at = clock.now() + timedelta(days=365)
        buy("user_a", PlanTier.PREMIUM, clock, expires_at=expires_at)
        assert get_plan_record("user_a").expires_at == expires_at

    def test_redelivery_changes_nothing(self, clock):
        buy("user_a", PlanTier.BASIC, clock, order_id="order-1")
        first = get_plan_record("user_a")

        clock.advance(hours=2)
        again = buy("user_a", PlanTier.BASIC, clock, order_id="order-1")

        assert again.applied is False
        assert get_plan_record("user_a") == first
        assert len(list_purchases("user_a")) == 1
        assert len(list_notifications("user_a")) == 1

    def test_free_cannot_be_purchased(self, clock):
        with pytest.raises(InvalidMappingError):
            buy("user_a", PlanTier.FREE, clock)
        assert get_plan_record("user_a") is None

    def test_refund_reverts_to_free_and_forfeits_paused_reward(self, clock):
        grant_reward(
            "user_a",
            PlanTier.PREMIUM,
            starts_at=clock.now() - timedelta(days=1),
            expires_at=clock.now() + timedelta(days=10),
        )
        buy("user_a", PlanTier.BASIC, clock, order_id="order-1")
        assert get_plan_record("user_a").paused_reward is not None

        clock.advance(days=2)
        refund = buy("user_a", PlanTier.BASIC, clock, order_id="order-1", status=PurchaseStatus.REFUNDED)

        assert refund.applied is True
        assert refund.purchase.status is PurchaseStatus.REFUNDED
        record = get_plan_record("user_a")
        assert record.plan_id is PlanTier.FREE
        assert record.expires_at is None
        assert record.paused_reward is None
        assert record.purchase_id is None
        assert has_ever_paid("user_a") is False

    def test_refunded_order_cannot_complete_again(self, clock):
        buy("user_a", PlanTier.BASIC, clock, order_id="order-1")
        buy("user_a", PlanTier.BASIC, clock, order_id="order-1", status=PurchaseStatus.REFUNDED)
        with pytest.raises(ConflictError):
            buy("user_a", PlanTier.BASIC, clock, order_id="order-1")

    def test_order_belongs_to_one_user(self, clock):
        buy("user_a", PlanTier.BASIC, clock, order_id="order-1")
        with pytest.raises(ConflictError):
            buy("user_b", PlanTier.BASIC, clock, order_id="order-1")
        assert get_plan_record("user_b") is None

    def test_repurchase_keeps_an_earlier_paused_reward(self, clock):
        grant_reward(
            "user_a",
            PlanTier.PREMIUM,
            starts_at=clock.now() - timedelta(days=1),
            expires_at=clock.now() + timedelta(days=10),
        )
        buy("user_a", PlanTier.BASIC, clock, order_id="order-1")
        clock.advance(days=5)
        buy("user_a", PlanTier.PREMIUM, clock, order_id="order-2")

        paused = get_plan_record("user_a").paused_reward
        assert paused is not None
        assert paused.reward_plan_id is PlanTier.PREMIUM
        assert paused.remaining_time_ms == int(timedelta(days=10).total_seconds() * 1000)

    def test_pending_rewards_are_deferred_past_the_purchase(self, clock):
        reward_start = clock.now() + timedelta(days=3)
        grant_reward("user_a", PlanTier.BASIC, starts_at=reward_start, expires_at=reward_start + timedelta(days=30))

        buy("user_a", PlanTier.PREMIUM, clock)
        plan_end = get_plan_record("user_a").expires_at

        assert active_rewards("user_a", reward_start + timedelta(hours=1)) == []
        deferred = active_rewards("user_a", plan_end + timedelta(hours=1))
        assert len(deferred) == 1
        assert deferred[0].expires_at == plan_end + timedelta(days=30)


class TestGumroadWebhook:
    def test_ping_is_acknowledged(self, clock):
        result = process_gumroad_webhook({"type": "ping"}, clock=clock)
        assert result.status == "ping"
        assert _count(billing_events) == 0

    def test_sale_is_processed_once(self, clock):
        first = process_gumroad_webhook(_sale(), clock=clock)
        second = process_gumroad_webhook(_sale(), clock=clock)

        assert first.status == "processed"
        assert first.event_key == "sale_123:completed"
        assert first.plan_id == "basic"
        assert second.status == "duplicate"
        assert _count(purchases) == 1
        assert _count(billing_events, billing_events.c.processed.is_(True)) == 1
        assert get_plan_record("user_buyer").plan_id is PlanTier.BASIC
        assert get_plan_record("user_buyer").user_email == "Buyer@Example.com"

    def test_user_resolved_by_email(self, clock):
        get_or_create_user("user_mail", email="buyer@example.com")
        result = process_gumroad_webhook(_sale(user_id=""), clock=clock)
        assert result.user_id == "user_mail"
        assert get_plan_record("user_mail").plan_id is PlanTier.BASIC

    def test_unknown_user_is_rejected_without_mutation(self, clock):
        with pytest.raises(InvalidMappingError):
            process_gumroad_webhook(_sale(user_id="", email="stranger@example.com"), clock=clock)
        assert _count(user_plans) == 0
        assert _count(purchases) == 0

    def test_unmappable_product_is_rejected_without_mutation(self, clock, caplog):
        with caplog.at_level("WARNING"):
            with pytest.raises(InvalidMappingError):
                process_gumroad_webhook(
                    _sale(product_id="mystery", short_product_id="", price="12.00"),
                    clock=clock,
                )
        assert _count(user_plans) == 0
        assert _count(billing_events) == 0
        assert any("unmappable product" in r.getMessage() for r in caplog.records)

    def test_refund_after_sale(self, clock):
        process_gumroad_webhook(_sale(), clock=clock)
        clock.advance(days=1)
        result = process_gumroad_webhook(_sale(refunded="true"), clock=clock)

        assert result.status == "processed"
        assert result.event_key == "sale_123:refunded"
        assert get_plan_record("user_buyer").plan_id is PlanTier.FREE
        assert list_purchases("user_buyer")[0].status is PurchaseStatus.REFUNDED

    def test_failed_delivery_can_be_retried(self, clock):
        give_plan("user_owner", PlanTier.FREE, started_at=clock.now())
        process_gumroad_webhook(_sale(user_id="user_owner"), clock=clock)

        with pytest.raises(ConflictError):
            process_gumroad_webhook(_sale(user_id="user_other", refunded="true"), clock=clock)
        with get_db_session() as session:
            failed = session.execute(
                select(billing_events).where(billing_events.c.event_key == "sale_123:refunded")
            ).first()
        assert failed.processed is False or failed.processed == 0
        assert "another user" in failed.error

        retried = process_gumroad_webhook(_sale(user_id="user_owner", refunded="true"), clock=clock)
        assert retried.status == "processed"
        assert get_plan_record("user_owner").plan_id is PlanTier.FREE
