from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from luaspark.logging import get_logger, sanitize_error_message
from luaspark.service.errors import (
    GenerationCancelled,
    ServiceError,
    UpstreamError,
    UpstreamTimeout,
    ValidationError,
)
from luaspark.service.memory import ConversationMemory
from luaspark.service.model_backend import ModelBackend
from luaspark.service.reply_parser import EMPTY_REPLY, parse_reply
from luaspark.storage.credentials import CredentialStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class GenerationResult:
    code: str
    explanation: str
    raw: str


class GenerationOrchestrator:
    """Runs one generate request end to end for an already authorized identity.

    Calls for the same identity are serialized on the identity's memory lock so
    that each exchange lands in memory as an adjacent user/assistant pair.
    """

    def __init__(
        self,
        memory: ConversationMemory,
        store: CredentialStore,
        backend: ModelBackend,
        *,
        system_prompt: str,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.memory = memory
        self.store = store
        self.backend = backend
        self.system_prompt = system_prompt
        self.timeout_seconds = timeout_seconds

    async def generate(
        self,
        identity: str,
        prompt: Optional[str],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required", detail={"field": "prompt"})

        async with self.memory.lock_for(identity):
            snapshot = self.memory.history(identity)
            self.memory.append_user(identity, prompt)
            messages = self.memory.build_context(identity, self.system_prompt)
            started = time.perf_counter()
            try:
                raw = await self._call_backend(messages, cancel_event)
            except GenerationCancelled:
                self.memory.restore(identity, snapshot)
                logger.info("generation_cancelled", backend=self.backend.mode)
                raise
            except asyncio.CancelledError:
                self.memory.restore(identity, snapshot)
                raise
            except UpstreamTimeout:
                self.memory.restore(identity, snapshot)
                logger.error(
                    "generation_upstream_timeout",
                    backend=self.backend.mode,
                    timeout_seconds=self.timeout_seconds,
                )
                raise
            except ServiceError as exc:
                self.memory.restore(identity, snapshot)
                logger.error(
                    "generation_upstream_failed",
                    backend=self.backend.mode,
                    error_code=exc.error_code,
                    error=exc.message,
                )
                raise
            except Exception as exc:
                self.memory.restore(identity, snapshot)
                safe_message = sanitize_error_message(str(exc))
                logger.error(
                    "generation_upstream_error",
                    backend=self.backend.mode,
                    error_type=type(exc).__name__,
                    error=safe_message,
                )
                raise UpstreamError(safe_message or "generation failed") from exc

            parsed = parse_reply(raw)
            stored = raw.strip() if raw and raw.strip() else EMPTY_REPLY
            self.memory.append_assistant(identity, stored)
            await asyncio.to_thread(self.store.persist)

        logger.info(
            "generation_completed",
            backend=self.backend.mode,
            structured=parsed.structured,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return GenerationResult(code=parsed.code, explanation=parsed.explanation, raw=stored)

    async def _call_backend(self, messages: list, cancel_event: Optional[asyncio.Event]) -> str:
        task = asyncio.ensure_future(self.backend.complete(messages, cancel_event=cancel_event))
        waiters = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        # Let the backend release its upstream job before reporting
        await asyncio.gather(task, return_exceptions=True)
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled("generation cancelled by caller")
        raise UpstreamTimeout(
            f"generation did not finish within {self.timeout_seconds:g} seconds"
        )
