from __future__ import annotations

import asyncio
import contextlib
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from luaspark.api.schemas import (
    CredentialsRequest,
    GenerateRequest,
    GenerateResponse,
    LogoutRequest,
    LogoutResponse,
    MarkEntitledRequest,
    OkResponse,
    PaymentWebhookRequest,
    PaymentWebhookResponse,
    SigninResponse,
    TokenResponse,
    VerifyTokenResponse,
)
from luaspark.logging import get_logger
from luaspark.service.errors import AuthenticationError, ValidationError
from luaspark.service.runtime import Runtime
from luaspark.storage.errors import CredentialMismatch, RecordNotFound

logger = get_logger(__name__)

router = APIRouter()

DISCONNECT_POLL_SECONDS = 0.5


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Token from ``Authorization``; the ``Bearer`` prefix is optional."""
    if not authorization:
        return None
    value = authorization.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest.strip()
    return value or None


def _secret_matches(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("client_disconnected", path=request.url.path)
            cancel_event.set()
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(cancel_event.wait(), DISCONNECT_POLL_SECONDS)


async def _stop_watcher(watcher: asyncio.Task, cancel_event: asyncio.Event) -> None:
    # is_disconnected() runs in an anyio cancel scope that can swallow the
    # cancellation; the set event ends the loop either way
    cancel_event.set()
    watcher.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await watcher


@router.post("/signup", response_model=TokenResponse, tags=["auth"])
async def signup(body: CredentialsRequest, runtime: Runtime = Depends(get_runtime)):
    """Register an identity and open a session for it.

    Raises:
        400: identity or secret missing
        409: identity already registered (case-insensitive)
    """
    if not body.identity.strip() or not body.secret:
        raise ValidationError(
            "identity and secret are required", detail={"fields": ["identity", "secret"]}
        )
    record = await asyncio.to_thread(runtime.store.register, body.identity, body.secret)
    token = runtime.sessions.create_session(record.identity)
    logger.info("signup_succeeded", identity=record.identity, entitled=record.entitled)
    return TokenResponse(token=token)


@router.post("/signin", response_model=SigninResponse, tags=["auth"])
@router.post("/login", response_model=SigninResponse, tags=["auth"], include_in_schema=False)
async def signin(body: CredentialsRequest, runtime: Runtime = Depends(get_runtime)):
    """Check credentials and issue a fresh session token.

    Raises:
        400: identity or secret missing
        401: unknown identity or wrong secret
    """
    if not body.identity.strip() or not body.secret:
        raise ValidationError(
            "identity and secret are required", detail={"fields": ["identity", "secret"]}
        )
    try:
        record = await asyncio.to_thread(runtime.store.verify, body.identity, body.secret)
    except (RecordNotFound, CredentialMismatch):
        logger.warning("signin_failed")
        raise AuthenticationError("invalid credentials")
    token = runtime.sessions.create_session(record.identity)
    logger.info("signin_succeeded", identity=record.identity)
    return SigninResponse(token=token, entitled=record.entitled)


@router.post("/verifyToken", response_model=VerifyTokenResponse, tags=["auth"])
async def verify_token(
    token: Optional[str] = Depends(bearer_token),
    runtime: Runtime = Depends(get_runtime),
):
    record = runtime.gate.authenticate(token)
    return VerifyTokenResponse(valid=True, identity=record.identity, entitled=record.entitled)


@router.post("/logout", response_model=LogoutResponse, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    token: Optional[str] = Depends(bearer_token),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke the presented token, or every token of its identity with ``all``."""
    record = runtime.gate.authenticate(token)
    if body is not None and body.all:
        revoked = runtime.sessions.revoke_all(record.identity)
    else:
        revoked = 1 if runtime.sessions.revoke(token) else 0
    logger.info("logout_succeeded", identity=record.identity, revoked=revoked)
    return LogoutResponse(revoked=revoked)


@router.post("/generate", response_model=GenerateResponse, tags=["generation"])
async def generate(
    request: Request,
    body: Optional[GenerateRequest] = None,
    token: Optional[str] = Depends(bearer_token),
    runtime: Runtime = Depends(get_runtime),
):
    """Generate a script for the caller's prompt.

    The session and entitlement are checked before the prompt; a missing
    prompt never reaches the upstream model.

    Raises:
        400: prompt missing or blank
        401: missing or unknown session token
        402: identity not entitled and not the bypass identity
        500: upstream failure
        504: upstream did not finish in time
    """
    decision = runtime.gate.authorize(token, runtime.settings.bypass_email)
    if not decision.allowed:
        logger.warning("generate_denied", reason=decision.reason.value if decision.reason else None)
    decision.raise_for_denial()

    prompt = body.prompt if body is not None else None
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        result = await runtime.generation.generate(
            decision.identity, prompt, cancel_event=cancel_event
        )
    finally:
        await _stop_watcher(watcher, cancel_event)
    if decision.bypass:
        logger.info("generate_bypass_used", identity=decision.identity)
    return GenerateResponse(output=result.code, explanation=result.explanation)


@router.post("/markEntitled", response_model=OkResponse, tags=["billing"])
async def mark_entitled(
    body: MarkEntitledRequest,
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    runtime: Runtime = Depends(get_runtime),
):
    """Grant entitlement to an existing identity.

    Raises:
        400: identity missing
        401: admin key configured and not presented
        404: identity not registered
    """
    if not _secret_matches(runtime.settings.admin_api_key, x_admin_key):
        raise AuthenticationError("invalid admin key")
    if not body.identity.strip():
        raise ValidationError("identity is required", detail={"field": "identity"})
    record = await asyncio.to_thread(runtime.store.mark_entitled, body.identity)
    logger.info("identity_entitled", identity=record.identity, source="admin")
    return OkResponse()


@router.post("/paypal-webhook", response_model=PaymentWebhookResponse, tags=["billing"])
async def payment_webhook(
    body: PaymentWebhookRequest,
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    runtime: Runtime = Depends(get_runtime),
):
    """Payment notification; a completed payment entitles the identity.

    Identities that have not signed up yet get a credential-less record for
    any status; a later signup claims it.
    """
    if not _secret_matches(runtime.settings.webhook_secret, x_webhook_secret):
        raise AuthenticationError("invalid webhook secret")
    if not body.identity.strip():
        raise ValidationError("identity is required", detail={"field": "identity"})
    record, created = await asyncio.to_thread(runtime.store.ensure, body.identity)
    if not body.completed:
        logger.info(
            "payment_webhook_not_completed",
            identity=record.identity,
            payment_status=body.payment_status,
            created=created,
        )
        return PaymentWebhookResponse(entitled=record.entitled)
    record = await asyncio.to_thread(runtime.store.mark_entitled, body.identity)
    logger.info(
        "identity_entitled", identity=record.identity, source="payment", created=created
    )
    return PaymentWebhookResponse(entitled=record.entitled)
