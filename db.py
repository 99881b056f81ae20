from __future__ import annotations

import os
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Iterator

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from errors import StoreUnavailableError

PROFILE_TABLES = ("brandProfiles", "audienceProfiles", "aiRules")

USER_UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "subscribed",
        "plan",
        "subscription_status",
        "subscription_code",
        "paystack_customer_code",
        "subscribed_at",
    }
)


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise StoreUnavailableError("DATABASE_URL is not set.")
    return url


def get_connection():
    return psycopg.connect(_database_url(), row_factory=dict_row)


@contextmanager
def _cursor() -> Iterator[psycopg.Cursor]:
    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                yield cur
    except psycopg.Error as exc:
        raise StoreUnavailableError(str(exc)) from exc


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with _cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                subscribed BOOLEAN NOT NULL DEFAULT false,
                plan TEXT NOT NULL DEFAULT 'free',
                subscription_status TEXT NOT NULL DEFAULT 'inactive',
                subscription_code TEXT,
                paystack_customer_code TEXT,
                subscribed_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS users_subscription_code_key
            ON users (subscription_code)
            WHERE subscription_code IS NOT NULL;
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS subscriptions (
                user_id TEXT PRIMARY KEY REFERENCES users(id),
                email TEXT,
                plan TEXT NOT NULL DEFAULT 'free',
                provider TEXT,
                subscription_code TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                expires_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS "brandProfiles" (
                user_id TEXT PRIMARY KEY,
                name TEXT,
                tone TEXT,
                beliefs TEXT[]
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS "audienceProfiles" (
                user_id TEXT PRIMARY KEY,
                "targetAudience" TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS "aiRules" (
                user_id TEXT PRIMARY KEY,
                "bannedWords" TEXT[]
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS offers (
                id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS posts (
                id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS "memorySummaries" (
                id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                user_id TEXT NOT NULL,
                post_id TEXT REFERENCES posts(id),
                summary TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS memory_summaries_user_created_idx
            ON "memorySummaries" (user_id, created_at DESC);
            """
        )


def get_user_by_email(email: str) -> dict[str, Any] | None:
    ensure_schema()
    with _cursor() as cur:
        cur.execute("SELECT * FROM users WHERE email = %s", (email,))
        row = cur.fetchone()
        return dict(row) if row else None


def get_user_by_subscription_code(subscription_code: str) -> dict[str, Any] | None:
    ensure_schema()
    with _cursor() as cur:
        cur.execute("SELECT * FROM users WHERE subscription_code = %s", (subscription_code,))
        row = cur.fetchone()
        return dict(row) if row else None


def update_user(user_id: str, fields: dict[str, Any]) -> None:
    unknown = set(fields) - USER_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update user fields: {', '.join(sorted(unknown))}")
    if not fields:
        return
    ensure_schema()
    assignments = sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name))
        for name in fields
    )
    query = sql.SQL("UPDATE users SET {} WHERE id = {}").format(
        assignments, sql.Placeholder("_user_id")
    )
    with _cursor() as cur:
        cur.execute(query, {**fields, "_user_id": user_id})


def upsert_subscription(record: dict[str, Any]) -> None:
    ensure_schema()
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO subscriptions (
                user_id,
                email,
                plan,
                provider,
                subscription_code,
                status,
                updated_at
            )
            VALUES (
                %(user_id)s,
                %(email)s,
                %(plan)s,
                %(provider)s,
                %(subscription_code)s,
                %(status)s,
                %(updated_at)s
            )
            ON CONFLICT (user_id) DO UPDATE SET
                email = EXCLUDED.email,
                plan = EXCLUDED.plan,
                provider = EXCLUDED.provider,
                subscription_code = EXCLUDED.subscription_code,
                status = EXCLUDED.status,
                updated_at = EXCLUDED.updated_at
            """,
            {
                "user_id": record["user_id"],
                "email": record.get("email"),
                "plan": record["plan"],
                "provider": record.get("provider"),
                "subscription_code": record.get("subscription_code"),
                "status": record["status"],
                "updated_at": record["updated_at"],
            },
        )


class PostgresStore:
    """The persistence operations the webhook reconciler consumes."""

    def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        return get_user_by_email(email)

    def find_user_by_subscription_code(self, subscription_code: str) -> dict[str, Any] | None:
        return get_user_by_subscription_code(subscription_code)

    def update_user(self, user_id: str, fields: dict[str, Any]) -> None:
        update_user(user_id, fields)

    def upsert_subscription(self, record: dict[str, Any]) -> None:
        upsert_subscription(record)


def upsert_user(*, user_id: str, email: str) -> None:
    ensure_schema()
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO users (id, email)
            VALUES (%s, %s)
            ON CONFLICT (id) DO UPDATE SET email = EXCLUDED.email
            """,
            (user_id, email),
        )


def ensure_free_subscription(*, user_id: str, email: str | None) -> dict[str, Any]:
    """Insert a free plan row unless the user already has a subscription."""
    ensure_schema()
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO subscriptions (user_id, email, plan, status, expires_at)
            VALUES (%s, %s, 'free', 'active', NULL)
            ON CONFLICT (user_id) DO NOTHING
            """,
            (user_id, email),
        )
        cur.execute("SELECT * FROM subscriptions WHERE user_id = %s", (user_id,))
        row = cur.fetchone()
        return dict(row) if row else {}


def fetch_single(table: str, user_id: str) -> dict[str, Any] | None:
    if table not in PROFILE_TABLES:
        raise ValueError(f"Unknown profile table: {table}")
    ensure_schema()
    with _cursor() as cur:
        cur.execute(
            sql.SQL("SELECT * FROM {} WHERE user_id = %s LIMIT 1").format(sql.Identifier(table)),
            (user_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def fetch_offers(user_id: str) -> list[dict[str, Any]]:
    ensure_schema()
    with _cursor() as cur:
        cur.execute("SELECT * FROM offers WHERE user_id = %s", (user_id,))
        return [dict(row) for row in cur.fetchall()]


def fetch_memory_summaries(user_id: str, limit: int = 8) -> list[dict[str, Any]]:
    ensure_schema()
    with _cursor() as cur:
        cur.execute(
            """
            SELECT summary
            FROM "memorySummaries"
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [dict(row) for row in cur.fetchall()]


def insert_post(*, user_id: str, content: str) -> dict[str, Any]:
    ensure_schema()
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO posts (user_id, content)
            VALUES (%s, %s)
            RETURNING *
            """,
            (user_id, content),
        )
        row = cur.fetchone()
        return dict(row) if row else {}


def insert_memory_summary(*, user_id: str, post_id: str | None, summary: str) -> None:
    ensure_schema()
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO "memorySummaries" (user_id, post_id, summary)
            VALUES (%s, %s, %s)
            """,
            (user_id, post_id, summary),
        )
