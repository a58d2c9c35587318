"""
Applies verified Stripe webhook events to payments and subscriptions.

Handled events:
- checkout.session.completed: records a completed payment
- customer.subscription.updated: overwrites status, plan and period end
- customer.subscription.deleted: same fields, status forced to canceled

Subscriptions are keyed by the user id carried in the customer metadata.
Every subscription write overwrites the same fields with values taken from
the event, so replaying an event leaves the record unchanged. Payments are
inserted once per delivery with no duplicate check.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from bson import ObjectId

from database import DocumentStore, to_object_id
from errors import InvalidEventPayloadError, MetadataResolutionError

logger = logging.getLogger(__name__)

PAYMENTS = "payment"
SUBSCRIPTIONS = "subscription"

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_user_id(obj: Mapping[str, Any]) -> ObjectId:
    customer = obj.get("customer")
    metadata = customer.get("metadata") if isinstance(customer, Mapping) else None
    if not isinstance(metadata, Mapping) or not metadata.get("user_id"):
        metadata = obj.get("metadata")

    raw = metadata.get("user_id") if isinstance(metadata, Mapping) else None
    user_id = to_object_id(raw) if raw else None
    if user_id is None:
        raise MetadataResolutionError(f"Invalid user ID in metadata: {raw!r}")
    return user_id


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = obj.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if not isinstance(data, list) or not data or not isinstance(data[0], Mapping):
        raise InvalidEventPayloadError("Subscription has no billing items")
    return data[0]


def _plan_interval(item: Mapping[str, Any]) -> str:
    price = item.get("price")
    recurring = price.get("recurring") if isinstance(price, Mapping) else None
    interval = recurring.get("interval") if isinstance(recurring, Mapping) else None
    if not isinstance(interval, str):
        raise InvalidEventPayloadError("Subscription item has no recurring interval")
    return interval


def _period_end(obj: Mapping[str, Any], item: Mapping[str, Any]) -> datetime:
    # Newer Stripe API versions report the period on the item only
    value = obj.get("current_period_end", item.get("current_period_end"))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidEventPayloadError("Subscription has no current_period_end")
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _stripe_id(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    return value if isinstance(value, str) else None


class SubscriptionReconciler:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    def handle_event(self, event_type: str, payload: bytes) -> None:
        """
        Apply one event. ``payload`` is the JSON of the event's data object.

        Raises MetadataResolutionError when no user can be resolved,
        InvalidEventPayloadError for an unreadable object and PersistenceError
        when the store write fails.
        """
        try:
            obj = json.loads(payload)
        except (TypeError, ValueError) as exc:
            raise InvalidEventPayloadError("Event payload is not valid JSON") from exc
        if not isinstance(obj, dict):
            raise InvalidEventPayloadError("Event payload must be a JSON object")

        if event_type == CHECKOUT_COMPLETED:
            self._record_payment(obj)
        elif event_type == SUBSCRIPTION_UPDATED:
            self._update_subscription(obj, status=obj.get("status"))
        elif event_type == SUBSCRIPTION_DELETED:
            self._update_subscription(obj, status="canceled")
        else:
            logger.debug("Ignoring Stripe event type %s", event_type)

    def _record_payment(self, session: Dict[str, Any]) -> None:
        user_id = _resolve_user_id(session)
        transaction_id = session.get("id")
        if not isinstance(transaction_id, str):
            raise InvalidEventPayloadError("Checkout session has no id")

        payment = {
            "user_id": user_id,
            "gateway": "stripe",
            "transaction_id": transaction_id,
            "amount": int(session.get("amount_total") or 0),
            "currency": session.get("currency") or "",
            "status": "completed",
            "timestamp": self.clock(),
        }
        payment_id = self.store.insert(PAYMENTS, payment)
        logger.info("Recorded payment %s for user %s (transaction %s)", payment_id, user_id, transaction_id)

    def _update_subscription(self, sub: Dict[str, Any], status: Any) -> None:
        user_id = _resolve_user_id(sub)
        if not isinstance(status, str):
            raise InvalidEventPayloadError("Subscription has no status")
        item = _first_item(sub)

        fields = {
            "status": status,
            "plan": _plan_interval(item),
            "current_period_end": _period_end(sub, item),
            "cancel_at_period_end": bool(sub.get("cancel_at_period_end", False)),
            "customer_id": _stripe_id(sub.get("customer")),
            "subscription_id": _stripe_id(sub.get("id")),
        }
        self.store.upsert_fields(
            SUBSCRIPTIONS,
            {"user_id": user_id},
            fields,
            on_insert={"auto_renew": True, "created_at": self.clock()},
        )
        logger.info("Subscription for user %s set to %s (%s)", user_id, status, fields["plan"])
