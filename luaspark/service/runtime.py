from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from argon2 import PasswordHasher

from luaspark.config import Settings
from luaspark.logging import get_logger
from luaspark.service.gate import AuthorizationGate
from luaspark.service.generation import GenerationOrchestrator
from luaspark.service.memory import ConversationMemory
from luaspark.service.model_backend import ModelBackend, build_backend
from luaspark.service.sessions import SessionRegistry
from luaspark.storage.credentials import CredentialStore

logger = get_logger(__name__)


class Runtime:
    """Owns the service instances for one app instance.

    Built once per app (see ``luaspark.app.create_app``) and handed to the
    routes through ``app.state``; tests build their own with a cheap hasher
    and a fake backend.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        backend: Optional[ModelBackend] = None,
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            users_db_path=settings.users_db_path,
            model_backend=settings.model_backend.value,
        )
        self.store = CredentialStore(settings.users_db_path, hasher=hasher)
        self.sessions = SessionRegistry(
            max_per_identity=settings.max_sessions_per_identity,
            ttl_minutes=settings.session_ttl_minutes,
        )
        self.memory = ConversationMemory(self.store)
        self.gate = AuthorizationGate(self.sessions, self.store)
        self.backend = backend or build_backend(settings)
        self.generation = GenerationOrchestrator(
            self.memory,
            self.store,
            self.backend,
            system_prompt=settings.full_system_prompt,
            timeout_seconds=settings.upstream_timeout_seconds,
        )
        self._flush_task: asyncio.Task | None = None
        logger.info(
            "runtime_initialized",
            identities=self.store.count(),
            model_backend=self.backend.mode,
            bypass_configured=bool(settings.bypass_email),
            admin_key_configured=bool(settings.admin_api_key),
            webhook_secret_configured=bool(settings.webhook_secret),
        )

    def start_periodic_flush(self) -> None:
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(
                _run_periodic_flush(self.store, self.settings.flush_interval_seconds)
            )

    async def stop_periodic_flush(self) -> None:
        if self._flush_task is None:
            return
        self._flush_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._flush_task
        self._flush_task = None

    async def close(self) -> None:
        await self.stop_periodic_flush()
        await asyncio.to_thread(self.store.persist)
        try:
            await self.backend.close()
        except Exception as exc:
            logger.warning("backend_close_failed", error=str(exc))
        self.sessions.clear()
        logger.info("runtime_closed")


async def _run_periodic_flush(store: CredentialStore, interval_seconds: float) -> None:
    """Background loop writing the credential store whenever it has unsaved changes."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(store.flush_if_dirty)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort flush
                logger.warning("periodic_flush_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("periodic_flush_task_cancelled")
        raise
