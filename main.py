from __future__ import annotations

import asyncio
import inspect
import logging
import os
from functools import lru_cache
from typing import Any, TYPE_CHECKING
from urllib.parse import quote

import requests
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from auth import AuthProviderError, bearer_token, fetch_auth_user
from db import (
    PROFILE_TABLES,
    PostgresStore,
    ensure_free_subscription,
    fetch_memory_summaries,
    fetch_offers,
    fetch_single,
    insert_memory_summary,
    insert_post,
    upsert_user,
)
from errors import AuthenticationError, StoreUnavailableError, WebhookError
from webhooks import SIGNATURE_HEADER, Store, extract_subscription_code, process_webhook

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("brandvoice")

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI


class SyncedUser(BaseModel):
    id: str
    email: str


class SyncResponse(BaseModel):
    success: bool
    user: SyncedUser
    subscription: dict[str, Any]


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    user_id: str | None = Field(default=None, alias="userId")


class ChatResponse(BaseModel):
    reply: str
    post: dict[str, Any]
    memory_summary: str


class VerifyPaymentRequest(BaseModel):
    reference: str | None = None


class VerifyPaymentResponse(BaseModel):
    success: bool
    message: str
    email: str | None = None
    subscription_code: str | None = None


app = FastAPI(title="BrandVoice Backend")

MEMORY_SUMMARY_LIMIT = 8
PAYSTACK_SUCCESS = "success"


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def _bool_env(name: str, default: str | None = None) -> bool:
    raw = _env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def _environment() -> str:
    return (_env("ENVIRONMENT", "development") or "development").strip().lower()


def _strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return _bool_env("STRICT_ENV_VALIDATION", "true")
    return _environment() in {"production", "prod"}


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin or origin == "*":
            continue
        origins.append(origin.rstrip("/"))
    return origins


def _openai_api_key() -> str | None:
    return _env("OPENAI_API_KEY") or _env("OPENAI_key")


def _validate_env() -> None:
    errors: list[str] = []
    warnings: list[str] = []
    strict = _strict_env()

    if not _env("PAYSTACK_SECRET_KEY"):
        errors.append("PAYSTACK_SECRET_KEY is required.")

    required = {
        "SUPABASE_URL": _env("SUPABASE_URL"),
        "SUPABASE_SERVICE_ROLE_KEY": _env("SUPABASE_SERVICE_ROLE_KEY"),
        "DATABASE_URL": _env("DATABASE_URL"),
        "OPENAI_API_KEY": _openai_api_key(),
    }
    for name, value in required.items():
        if value:
            continue
        if strict:
            errors.append(f"{name} is required.")
        else:
            warnings.append(f"{name} is not set.")

    temperature = _env("OPENAI_TEMPERATURE")
    if temperature is not None:
        try:
            float(temperature)
        except ValueError:
            errors.append("OPENAI_TEMPERATURE must be a number.")
    max_tokens = _env("OPENAI_MAX_TOKENS")
    if max_tokens is not None:
        try:
            int(max_tokens)
        except ValueError:
            errors.append("OPENAI_MAX_TOKENS must be an integer.")

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)


_validate_env()

_origins = _parse_origins(_env("CORS_ORIGINS"))
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins or ["*"],
    allow_credentials=bool(_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def _paystack_secret() -> str:
    secret = _env("PAYSTACK_SECRET_KEY")
    if not secret:
        raise RuntimeError("PAYSTACK_SECRET_KEY is not set.")
    return secret


def _paystack_api_base() -> str:
    return (_env("PAYSTACK_API_BASE_URL", "https://api.paystack.co") or "").rstrip("/")


@lru_cache(maxsize=1)
def _store() -> PostgresStore:
    return PostgresStore()


def get_store() -> Store:
    return _store()


def get_paystack_secret() -> str:
    return _paystack_secret()


def _supabase_settings() -> tuple[str, str]:
    url = _env("SUPABASE_URL")
    key = _env("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise HTTPException(status_code=500, detail="Auth provider is not configured.")
    return url, key


def get_current_user(request: Request) -> dict[str, Any]:
    token = bearer_token(request.headers.get("authorization"))
    if not token:
        raise HTTPException(status_code=401, detail="Missing token.")
    supabase_url, service_key = _supabase_settings()
    try:
        user = fetch_auth_user(token, supabase_url=supabase_url, service_key=service_key)
    except AuthProviderError as exc:
        logger.exception("Failed to reach auth provider.")
        raise HTTPException(status_code=502, detail="Auth provider unavailable.") from exc
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")
    return user


def _llm_kwargs(
    api_key: str,
    model: str,
    base_url: str | None,
    temperature: float | None,
    max_tokens: int | None,
) -> dict:
    from langchain_openai import ChatOpenAI

    signature = inspect.signature(ChatOpenAI.__init__)
    params = signature.parameters
    kwargs: dict[str, object] = {"model": model}

    if "api_key" in params:
        kwargs["api_key"] = api_key
    if "openai_api_key" in params:
        kwargs["openai_api_key"] = api_key
    if base_url:
        if "base_url" in params:
            kwargs["base_url"] = base_url
        if "openai_api_base" in params:
            kwargs["openai_api_base"] = base_url
    if temperature is not None and "temperature" in params:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        if "max_tokens" in params:
            kwargs["max_tokens"] = max_tokens
        elif "max_completion_tokens" in params:
            kwargs["max_completion_tokens"] = max_tokens

    return kwargs


@lru_cache(maxsize=4)
def _get_llm(temperature: float | None = None) -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    api_key = _openai_api_key()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not set.")

    model = _env("OPENAI_MODEL", "gpt-4o-mini") or "gpt-4o-mini"
    if temperature is None and _env("OPENAI_TEMPERATURE"):
        temperature = float(_env("OPENAI_TEMPERATURE") or 0)

    max_tokens = None
    max_tokens_raw = _env("OPENAI_MAX_TOKENS")
    if max_tokens_raw:
        max_tokens = int(max_tokens_raw)

    return ChatOpenAI(
        **_llm_kwargs(
            api_key=api_key,
            model=model,
            base_url=_env("OPENAI_BASE_URL"),
            temperature=temperature,
            max_tokens=max_tokens,
        )
    )


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def build_system_prompt(
    brand: dict[str, Any] | None,
    audience: dict[str, Any] | None,
    rules: dict[str, Any] | None,
    offers: list[dict[str, Any]],
    memories: list[dict[str, Any]],
) -> str:
    brand = brand or {}
    audience = audience or {}
    rules = rules or {}
    beliefs = brand.get("beliefs") or []
    banned_words = rules.get("bannedWords") or []
    offer_lines = [f"{offer.get('title')}: {offer.get('description')}" for offer in offers]
    memory_lines = [str(memory.get("summary")) for memory in memories]

    return (
        "You are an AI assistant representing this brand.\n\n"
        "BRAND:\n"
        f"- Name: {brand.get('name') or 'Unknown'}\n"
        f"- Tone: {brand.get('tone') or 'Neutral'}\n\n"
        "BELIEFS:\n"
        f"{_bullets([str(belief) for belief in beliefs])}\n\n"
        "AUDIENCE:\n"
        f"- Target: {audience.get('targetAudience') or 'General'}\n\n"
        "OFFERS:\n"
        f"{_bullets(offer_lines)}\n\n"
        "MEMORY:\n"
        f"{_bullets(memory_lines)}\n\n"
        "RULES:\n"
        "Never use banned words:\n"
        f"{_bullets([str(word) for word in banned_words])}\n"
    )


def _complete(system_prompt: str, message: str) -> str:
    messages = [SystemMessage(content=system_prompt), HumanMessage(content=message)]
    response = _get_llm().invoke(messages)
    return getattr(response, "content", None) or ""


def _summarize(reply: str) -> str:
    prompt = f"Summarize this post into short AI memory:\n{reply}"
    response = _get_llm(0.0).invoke([HumanMessage(content=prompt)])
    return (getattr(response, "content", None) or "").strip()


def _fetch_paystack_transaction(reference: str) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {_paystack_secret()}"}
    url = f"{_paystack_api_base()}/transaction/verify/{quote(reference, safe='')}"
    try:
        resp = requests.get(url, headers=headers, timeout=15)
    except requests.RequestException as exc:
        logger.exception("Failed to reach Paystack API.")
        raise HTTPException(status_code=502, detail="Payment provider unavailable.") from exc

    try:
        payload = resp.json()
    except ValueError as exc:
        logger.error("Paystack API error: %s", resp.text)
        raise HTTPException(status_code=502, detail="Payment provider unavailable.") from exc
    return payload if isinstance(payload, dict) else {}


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "backend working"}


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/user/sync", response_model=SyncResponse)
def sync_user(user: dict[str, Any] = Depends(get_current_user)) -> SyncResponse:
    user_id = user["id"]
    email = user.get("email")
    if not email:
        raise HTTPException(status_code=400, detail="Email address is missing.")
    try:
        upsert_user(user_id=user_id, email=email)
        subscription = ensure_free_subscription(user_id=user_id, email=email)
    except StoreUnavailableError as exc:
        logger.exception("User sync failed.")
        raise HTTPException(status_code=500, detail="User sync failed.") from exc

    logger.info("User synced and subscription ensured: %s", user_id)
    return SyncResponse(
        success=True,
        user=SyncedUser(id=user_id, email=email),
        subscription=subscription,
    )


@app.post("/ai/chat", response_model=ChatResponse)
async def ai_chat(
    payload: ChatRequest,
    user: dict[str, Any] = Depends(get_current_user),
) -> ChatResponse:
    user_id = user["id"]
    if payload.user_id and payload.user_id != user_id:
        raise HTTPException(status_code=403, detail="Cannot chat on behalf of another user.")
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required.")

    try:
        brand, audience, rules = await asyncio.gather(
            *(run_in_threadpool(fetch_single, table, user_id) for table in PROFILE_TABLES)
        )
        offers = await run_in_threadpool(fetch_offers, user_id)
        memories = await run_in_threadpool(fetch_memory_summaries, user_id, MEMORY_SUMMARY_LIMIT)
    except StoreUnavailableError as exc:
        logger.exception("Failed to load brand context.")
        raise HTTPException(status_code=500, detail="Unable to load brand context.") from exc

    system_prompt = build_system_prompt(brand, audience, rules, offers, memories)

    try:
        reply = await run_in_threadpool(_complete, system_prompt, message)
        post = await run_in_threadpool(insert_post, user_id=user_id, content=reply)
        memory_summary = await run_in_threadpool(_summarize, reply)
        await run_in_threadpool(
            insert_memory_summary,
            user_id=user_id,
            post_id=post.get("id"),
            summary=memory_summary,
        )
    except Exception as exc:
        logger.exception("AI chat error.")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return ChatResponse(reply=reply, post=post, memory_summary=memory_summary)


@app.post("/verify-payment", response_model=VerifyPaymentResponse)
def verify_payment(payload: VerifyPaymentRequest) -> VerifyPaymentResponse:
    reference = (payload.reference or "").strip()
    if not reference:
        raise HTTPException(status_code=400, detail="Transaction reference required.")

    result = _fetch_paystack_transaction(reference)
    data = result.get("data")
    if not isinstance(data, dict):
        data = {}
    if not result.get("status") or data.get("status") != PAYSTACK_SUCCESS:
        raise HTTPException(status_code=400, detail="Payment verification failed.")

    customer = data.get("customer")
    if not isinstance(customer, dict):
        customer = {}
    # Activation is left to the charge.success webhook.
    return VerifyPaymentResponse(
        success=True,
        message="Payment received. Subscription activating...",
        email=customer.get("email"),
        subscription_code=extract_subscription_code(data.get("subscription")),
    )


@app.post("/paystack/webhook")
async def paystack_webhook(
    request: Request,
    store: Store = Depends(get_store),
    secret: str = Depends(get_paystack_secret),
) -> dict[str, bool]:
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    try:
        await run_in_threadpool(process_webhook, raw_body, signature, secret, store)
    except AuthenticationError as exc:
        logger.warning("Rejected Paystack webhook: %s", exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except WebhookError as exc:
        logger.exception("Paystack webhook processing failed.")
        raise HTTPException(status_code=exc.status_code, detail="Webhook processing failed.") from exc
    return {"received": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(_env("PORT", "8000") or 8000))
