from __future__ import annotations

from conftest import paystack_body, sign

WEBHOOK_URL = "/paystack/webhook"

CHARGE_SUCCESS = paystack_body(
    "charge.success",
    {
        "customer": {"email": "a@x.com", "customer_code": "CUS1"},
        "subscription": "SUB1",
    },
)


def post_webhook(client, body: bytes, signature: str | bytes | None):
    headers = {"content-type": "application/json"}
    if signature is not None:
        headers["x-paystack-signature"] = signature
    return client.post(WEBHOOK_URL, content=body, headers=headers)


def test_charge_success_activates_subscription(client, store):
    response = post_webhook(client, CHARGE_SUCCESS, sign(CHARGE_SUCCESS))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    user = store.users["user-1"]
    assert user["subscribed"] is True
    assert user["plan"] == "pro"
    assert user["subscription_code"] == "SUB1"
    assert store.subscriptions["user-1"]["status"] == "active"


def test_subscription_disable_after_charge_cancels(client, store):
    post_webhook(client, CHARGE_SUCCESS, sign(CHARGE_SUCCESS))
    body = paystack_body("subscription.disable", {"subscription_code": "SUB1"})

    response = post_webhook(client, body, sign(body))

    assert response.status_code == 200
    assert store.users["user-1"]["subscribed"] is False
    assert store.users["user-1"]["subscription_status"] == "cancelled"


def test_redelivered_charge_leaves_single_subscription(client, store):
    for _ in range(3):
        assert post_webhook(client, CHARGE_SUCCESS, sign(CHARGE_SUCCESS)).status_code == 200

    assert list(store.subscriptions) == ["user-1"]
    assert store.users["user-1"]["subscription_status"] == "active"


def test_tampered_body_is_rejected(client, store):
    signature = sign(CHARGE_SUCCESS)
    tampered = CHARGE_SUCCESS.replace(b"a@x.com", b"b@x.com")
    before = store.snapshot()

    response = post_webhook(client, tampered, signature)

    assert response.status_code == 401
    assert store.snapshot() == before
    assert store.writes == []
    assert store.lookups == 0


def test_missing_signature_is_rejected(client, store):
    response = post_webhook(client, CHARGE_SUCCESS, None)

    assert response.status_code == 401
    assert store.writes == []


def test_unhandled_event_is_acknowledged_without_writes(client, store):
    body = paystack_body("something.unhandled", {"customer": {"email": "a@x.com"}})

    response = post_webhook(client, body, sign(body))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert store.writes == []


def test_payment_failed_for_unknown_email_is_acknowledged(client, store):
    body = paystack_body("invoice.payment_failed", {"customer": {"email": "nobody@x.com"}})
    before = store.snapshot()

    response = post_webhook(client, body, sign(body))

    assert response.status_code == 200
    assert store.snapshot() == before


def test_malformed_payload_asks_for_redelivery(client, store):
    body = b"{this is not json"

    response = post_webhook(client, body, sign(body))

    assert response.status_code == 500
    assert store.writes == []


def test_store_outage_asks_for_redelivery(client, store):
    store.unavailable = True

    response = post_webhook(client, CHARGE_SUCCESS, sign(CHARGE_SUCCESS))

    assert response.status_code == 500


def test_half_applied_charge_is_repaired_by_redelivery(client, store):
    store.failing.add("upsert_subscription")

    first = post_webhook(client, CHARGE_SUCCESS, sign(CHARGE_SUCCESS))

    assert first.status_code == 500
    assert store.users["user-1"]["subscribed"] is True
    assert store.subscriptions == {}

    store.failing.clear()
    second = post_webhook(client, CHARGE_SUCCESS, sign(CHARGE_SUCCESS))

    assert second.status_code == 200
    assert list(store.subscriptions) == ["user-1"]
    subscription = store.subscriptions["user-1"]
    assert subscription["status"] == "active"
    assert subscription["subscription_code"] == store.users["user-1"]["subscription_code"] == "SUB1"


def test_non_ascii_signature_is_rejected(client, store):
    response = post_webhook(client, CHARGE_SUCCESS, b"\xff\xfe")

    assert response.status_code == 401
    assert store.writes == []
    assert store.lookups == 0
