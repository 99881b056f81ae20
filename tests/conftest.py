from __future__ import annotations

import json
import os
from typing import Any

import pytest

TEST_PAYSTACK_SECRET = "sk_test_webhook_secret"

# main validates its environment at import time.
os.environ["PAYSTACK_SECRET_KEY"] = TEST_PAYSTACK_SECRET
os.environ["STRICT_ENV_VALIDATION"] = "false"
os.environ.setdefault("SUPABASE_URL", "https://project.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
from auth import compute_signature  # noqa: E402
from errors import StoreUnavailableError  # noqa: E402


def make_user(**overrides: Any) -> dict[str, Any]:
    user = {
        "id": "user-1",
        "email": "a@x.com",
        "subscribed": False,
        "plan": "free",
        "subscription_status": "inactive",
        "subscription_code": None,
        "paystack_customer_code": None,
        "subscribed_at": None,
    }
    user.update(overrides)
    return user


class InMemoryStore:
    """Stands in for PostgresStore; records every write it receives."""

    def __init__(self, users: list[dict[str, Any]] | None = None) -> None:
        self.users = {user["id"]: dict(user) for user in users or []}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.writes: list[tuple[str, Any]] = []
        self.lookups = 0
        self.unavailable = False
        self.failing: set[str] = set()

    def _check(self, operation: str) -> None:
        if self.unavailable or operation in self.failing:
            raise StoreUnavailableError("connection refused")

    def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        self._check("find_user_by_email")
        self.lookups += 1
        for user in self.users.values():
            if user["email"] == email:
                return dict(user)
        return None

    def find_user_by_subscription_code(self, subscription_code: str) -> dict[str, Any] | None:
        self._check("find_user_by_subscription_code")
        self.lookups += 1
        for user in self.users.values():
            if user.get("subscription_code") == subscription_code:
                return dict(user)
        return None

    def update_user(self, user_id: str, fields: dict[str, Any]) -> None:
        self._check("update_user")
        self.writes.append(("update_user", (user_id, dict(fields))))
        self.users[user_id].update(fields)

    def upsert_subscription(self, record: dict[str, Any]) -> None:
        self._check("upsert_subscription")
        self.writes.append(("upsert_subscription", dict(record)))
        current = self.subscriptions.get(record["user_id"], {})
        self.subscriptions[record["user_id"]] = {**current, **record}

    def snapshot(self) -> tuple[dict[str, Any], dict[str, Any]]:
        return (
            {key: dict(value) for key, value in self.users.items()},
            {key: dict(value) for key, value in self.subscriptions.items()},
        )


def sign(body: bytes, secret: str = TEST_PAYSTACK_SECRET) -> str:
    return compute_signature(body, secret)


def paystack_body(event: str, data: dict[str, Any]) -> bytes:
    return json.dumps({"event": event, "data": data}).encode("utf-8")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore([make_user()])


@pytest.fixture
def client(store: InMemoryStore):
    main.app.dependency_overrides[main.get_store] = lambda: store
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def authed_client(client: TestClient):
    main.app.dependency_overrides[main.get_current_user] = lambda: {
        "id": "user-1",
        "email": "a@x.com",
    }
    yield client
    main.app.dependency_overrides.pop(main.get_current_user, None)
