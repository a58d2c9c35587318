"""
Unit tests for SubscriptionReconciler.

Events are fed as the JSON of the Stripe data object, the way the webhook
route hands them over after signature verification.
"""
import json
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from errors import InvalidEventPayloadError, MetadataResolutionError
from reconciler import (
    CHECKOUT_COMPLETED,
    PAYMENTS,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTIONS,
    SubscriptionReconciler,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_END = 1735689600  # 2025-01-01T00:00:00Z


@pytest.fixture
def reconciler(store):
    return SubscriptionReconciler(store, clock=lambda: NOW)


def _payload(obj):
    return json.dumps(obj).encode()


def _checkout_session(user_id, session_id="cs_test_123", amount=1999):
    return {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": amount,
        "currency": "usd",
        "customer": {"id": "cus_123", "metadata": {"user_id": str(user_id)}},
    }


def _subscription(user_id, status="active", interval="month", period_end=PERIOD_END):
    return {
        "id": "sub_123",
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": False,
        "current_period_end": period_end,
        "customer": {"id": "cus_123", "metadata": {"user_id": str(user_id)}},
        "items": {"data": [{"price": {"recurring": {"interval": interval}}}]},
    }


class TestCheckoutCompleted:
    def test_records_payment(self, store, reconciler, user_id):
        reconciler.handle_event(CHECKOUT_COMPLETED, _payload(_checkout_session(user_id)))

        payments = store.find(PAYMENTS)
        assert len(payments) == 1
        payment = payments[0]
        assert payment["user_id"] == user_id
        assert payment["gateway"] == "stripe"
        assert payment["transaction_id"] == "cs_test_123"
        assert payment["amount"] == 1999
        assert payment["currency"] == "usd"
        assert payment["status"] == "completed"
        assert payment["timestamp"] == NOW

    def test_redelivery_records_a_second_payment(self, store, reconciler, user_id):
        payload = _payload(_checkout_session(user_id))

        reconciler.handle_event(CHECKOUT_COMPLETED, payload)
        reconciler.handle_event(CHECKOUT_COMPLETED, payload)

        assert store.count(PAYMENTS, {"transaction_id": "cs_test_123"}) == 2

    def test_user_id_from_session_metadata(self, store, reconciler, user_id):
        session = _checkout_session(user_id)
        session["customer"] = "cus_123"
        session["metadata"] = {"user_id": str(user_id)}

        reconciler.handle_event(CHECKOUT_COMPLETED, _payload(session))

        assert store.find_one(PAYMENTS, {"user_id": user_id}) is not None

    def test_missing_metadata_rejected(self, store, reconciler, user_id):
        session = _checkout_session(user_id)
        session["customer"] = {"id": "cus_123", "metadata": {}}

        with pytest.raises(MetadataResolutionError):
            reconciler.handle_event(CHECKOUT_COMPLETED, _payload(session))

        assert store.count(PAYMENTS) == 0

    def test_malformed_user_id_rejected(self, store, reconciler):
        session = _checkout_session("not-an-object-id")

        with pytest.raises(MetadataResolutionError):
            reconciler.handle_event(CHECKOUT_COMPLETED, _payload(session))

        assert store.count(PAYMENTS) == 0


class TestSubscriptionUpdated:
    def test_creates_subscription(self, store, reconciler, user_id):
        reconciler.handle_event(SUBSCRIPTION_UPDATED, _payload(_subscription(user_id)))

        sub = store.find_one(SUBSCRIPTIONS, {"user_id": user_id})
        assert sub["status"] == "active"
        assert sub["plan"] == "month"
        assert sub["current_period_end"] == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert sub["customer_id"] == "cus_123"
        assert sub["subscription_id"] == "sub_123"
        assert sub["auto_renew"] is True
        assert sub["created_at"] == NOW

    def test_overwrites_existing_record(self, store, reconciler, user_id):
        reconciler.handle_event(SUBSCRIPTION_UPDATED, _payload(_subscription(user_id)))
        reconciler.handle_event(
            SUBSCRIPTION_UPDATED, _payload(_subscription(user_id, status="past_due", interval="year"))
        )

        subs = store.find(SUBSCRIPTIONS, {"user_id": user_id})
        assert len(subs) == 1
        assert subs[0]["status"] == "past_due"
        assert subs[0]["plan"] == "year"

    def test_replay_is_idempotent(self, store, user_id):
        payload = _payload(_subscription(user_id))
        SubscriptionReconciler(store, clock=lambda: NOW).handle_event(SUBSCRIPTION_UPDATED, payload)
        first = store.find(SUBSCRIPTIONS)

        later = datetime(2024, 7, 1, tzinfo=timezone.utc)
        SubscriptionReconciler(store, clock=lambda: later).handle_event(SUBSCRIPTION_UPDATED, payload)

        assert store.find(SUBSCRIPTIONS) == first

    def test_period_end_from_item(self, store, reconciler, user_id):
        sub = _subscription(user_id)
        del sub["current_period_end"]
        sub["items"]["data"][0]["current_period_end"] = PERIOD_END

        reconciler.handle_event(SUBSCRIPTION_UPDATED, _payload(sub))

        stored = store.find_one(SUBSCRIPTIONS, {"user_id": user_id})
        assert stored["current_period_end"] == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_missing_items_rejected(self, store, reconciler, user_id):
        sub = _subscription(user_id)
        sub["items"] = {"data": []}

        with pytest.raises(InvalidEventPayloadError):
            reconciler.handle_event(SUBSCRIPTION_UPDATED, _payload(sub))

        assert store.count(SUBSCRIPTIONS) == 0

    def test_missing_metadata_rejected(self, store, reconciler, user_id):
        sub = _subscription(user_id)
        sub["customer"] = "cus_123"

        with pytest.raises(MetadataResolutionError):
            reconciler.handle_event(SUBSCRIPTION_UPDATED, _payload(sub))

        assert store.count(SUBSCRIPTIONS) == 0


class TestSubscriptionDeleted:
    def test_forces_canceled(self, store, reconciler, user_id):
        reconciler.handle_event(SUBSCRIPTION_UPDATED, _payload(_subscription(user_id)))

        reconciler.handle_event(SUBSCRIPTION_DELETED, _payload(_subscription(user_id, status="active")))

        sub = store.find_one(SUBSCRIPTIONS, {"user_id": user_id})
        assert sub["status"] == "canceled"
        assert sub["plan"] == "month"


class TestPayloadHandling:
    def test_invalid_json(self, reconciler):
        with pytest.raises(InvalidEventPayloadError):
            reconciler.handle_event(CHECKOUT_COMPLETED, b"{not json")

    def test_non_object_payload(self, reconciler):
        with pytest.raises(InvalidEventPayloadError):
            reconciler.handle_event(CHECKOUT_COMPLETED, b"[1, 2]")

    def test_unknown_event_type_ignored(self, store, reconciler, user_id):
        reconciler.handle_event("invoice.paid", _payload({"id": "in_123"}))

        assert store.count(PAYMENTS) == 0
        assert store.count(SUBSCRIPTIONS) == 0

    def test_user_id_is_stored_as_object_id(self, store, reconciler):
        user_id = ObjectId()

        reconciler.handle_event(CHECKOUT_COMPLETED, _payload(_checkout_session(user_id)))

        assert isinstance(store.find(PAYMENTS)[0]["user_id"], ObjectId)
