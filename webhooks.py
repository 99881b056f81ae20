"""Paystack webhook ingestion.

A delivery goes through verify -> classify -> reconcile. Each step either
returns or raises a ``WebhookError`` subclass; the route maps the error to
the status code the provider expects.

Lookups and writes are separate round-trips to the store and no lock is
taken across them. Two deliveries for the same user that interleave (say a
payment failure racing a charge success) resolve last-writer-wins per field.
This window is accepted: Paystack redelivers rarely and each event kind
writes its own small set of fields. Every write below is idempotent, so a
delivery that was cut off half way is repaired by the provider's redelivery.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Protocol, Union

from pydantic import BaseModel, ConfigDict

from auth import verify_signature
from errors import AuthenticationError, MalformedPayloadError

logger = logging.getLogger("brandvoice.webhooks")

SIGNATURE_HEADER = "x-paystack-signature"

EVENT_CHARGE_SUCCESS = "charge.success"
EVENT_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_SUBSCRIPTION_DISABLED = "subscription.disable"

PROVIDER_PAYSTACK = "paystack"
PLAN_PRO = "pro"
STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_CANCELLED = "cancelled"


class Store(Protocol):
    def find_user_by_email(self, email: str) -> dict[str, Any] | None: ...

    def find_user_by_subscription_code(self, subscription_code: str) -> dict[str, Any] | None: ...

    def update_user(self, user_id: str, fields: dict[str, Any]) -> None: ...

    def upsert_subscription(self, record: dict[str, Any]) -> None: ...


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class ChargeSuccess(_Event):
    kind: Literal["charge_success"] = "charge_success"
    email: str
    subscription_code: str | None = None
    customer_code: str | None = None


class PaymentFailed(_Event):
    kind: Literal["payment_failed"] = "payment_failed"
    email: str


class SubscriptionDisabled(_Event):
    kind: Literal["subscription_disabled"] = "subscription_disabled"
    subscription_code: str


class Unknown(_Event):
    kind: Literal["unknown"] = "unknown"
    event_type: str = ""


WebhookEvent = Union[ChargeSuccess, PaymentFailed, SubscriptionDisabled, Unknown]


class Outcome(str, Enum):
    APPLIED = "applied"
    NO_MATCH = "no_match"
    IGNORED = "ignored"


def _string(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def extract_subscription_code(value: Any) -> str | None:
    # Paystack sends either the bare code or the expanded subscription object.
    if isinstance(value, dict):
        return _string(value.get("subscription_code"))
    return _string(value)


def classify_event(raw_body: bytes) -> WebhookEvent:
    """Parse a verified body into a webhook event.

    Bodies that are not a JSON object raise ``MalformedPayloadError``.
    Anything well formed but unrecognized, including a known event that lacks
    the identifier it is reconciled by, comes back as ``Unknown``.
    """
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Invalid JSON payload.") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Webhook payload must be a JSON object.")

    event_type = str(payload.get("event") or "").strip()
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    customer = data.get("customer")
    if not isinstance(customer, dict):
        customer = {}

    if event_type == EVENT_CHARGE_SUCCESS:
        email = _string(customer.get("email"))
        if email:
            return ChargeSuccess(
                email=email,
                subscription_code=extract_subscription_code(data.get("subscription")),
                customer_code=_string(customer.get("customer_code")),
            )
    elif event_type == EVENT_PAYMENT_FAILED:
        email = _string(customer.get("email"))
        if email:
            return PaymentFailed(email=email)
    elif event_type == EVENT_SUBSCRIPTION_DISABLED:
        code = _string(data.get("subscription_code")) or extract_subscription_code(
            data.get("subscription")
        )
        if code:
            return SubscriptionDisabled(subscription_code=code)

    return Unknown(event_type=event_type)


def _apply_charge_success(event: ChargeSuccess, store: Store, now: datetime) -> Outcome:
    user = store.find_user_by_email(event.email)
    if not user:
        return Outcome.NO_MATCH

    # A charge without a subscription attached keeps whatever code is on record.
    code = event.subscription_code or user.get("subscription_code")
    fields: dict[str, Any] = {
        "plan": PLAN_PRO,
        "subscribed": True,
        "subscription_status": STATUS_ACTIVE,
        "subscription_code": code,
        "subscribed_at": now,
    }
    if event.customer_code:
        fields["paystack_customer_code"] = event.customer_code
    store.update_user(user["id"], fields)
    store.upsert_subscription(
        {
            "user_id": user["id"],
            "email": event.email,
            "plan": PLAN_PRO,
            "provider": PROVIDER_PAYSTACK,
            "subscription_code": code,
            "status": STATUS_ACTIVE,
            "updated_at": now,
        }
    )
    return Outcome.APPLIED


def _apply_payment_failed(event: PaymentFailed, store: Store) -> Outcome:
    user = store.find_user_by_email(event.email)
    if not user:
        return Outcome.NO_MATCH
    store.update_user(
        user["id"],
        {"subscribed": False, "subscription_status": STATUS_INACTIVE},
    )
    return Outcome.APPLIED


def _apply_subscription_disabled(event: SubscriptionDisabled, store: Store) -> Outcome:
    user = store.find_user_by_subscription_code(event.subscription_code)
    if not user:
        return Outcome.NO_MATCH
    store.update_user(
        user["id"],
        {"subscribed": False, "subscription_status": STATUS_CANCELLED},
    )
    return Outcome.APPLIED


def reconcile(event: WebhookEvent, store: Store, now: datetime | None = None) -> Outcome:
    """Apply one event to the stored user and subscription state.

    Store failures propagate as ``StoreUnavailableError``.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if isinstance(event, ChargeSuccess):
        return _apply_charge_success(event, store, now)
    if isinstance(event, PaymentFailed):
        return _apply_payment_failed(event, store)
    if isinstance(event, SubscriptionDisabled):
        return _apply_subscription_disabled(event, store)
    return Outcome.IGNORED


def process_webhook(
    raw_body: bytes,
    signature: str | None,
    secret: str,
    store: Store,
    now: datetime | None = None,
) -> Outcome:
    if not signature:
        raise AuthenticationError("Missing webhook signature.")
    if not verify_signature(raw_body, signature, secret):
        raise AuthenticationError("Invalid webhook signature.")

    event = classify_event(raw_body)
    outcome = reconcile(event, store, now=now)

    if outcome is Outcome.IGNORED:
        logger.info("Ignored Paystack event: %s", getattr(event, "event_type", "") or "<none>")
    elif outcome is Outcome.NO_MATCH:
        logger.info("Paystack %s matched no user.", event.kind)
    else:
        logger.info("Applied Paystack %s.", event.kind)
    return outcome
