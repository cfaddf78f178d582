from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, List, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from luaspark.config import ModelBackendMode, Settings
from luaspark.logging import get_logger
from luaspark.service.errors import (
    GenerationCancelled,
    UpstreamError,
    UpstreamFailed,
    UpstreamTimeout,
)

logger = get_logger(__name__)

SUCCESS_STATUSES = frozenset({"succeeded", "success", "completed", "complete", "done"})
FAILURE_STATUSES = frozenset(
    {"failed", "failure", "error", "cancelled", "canceled", "expired", "rejected"}
)


class ModelBackend(Protocol):
    """Interface for upstream text-generation collaborators."""

    mode: str

    async def complete(
        self,
        messages: List[dict],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str: ...

    async def close(self) -> None: ...


class OpenAIChatBackend:
    """Single-shot chat completion against the OpenAI API (or a compatible server)."""

    mode = ModelBackendMode.OPENAI.value

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 700,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        # One attempt per request; callers retry by resubmitting
        self.client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )

    async def complete(
        self,
        messages: List[dict],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APITimeoutError as exc:
            logger.error("openai_completion_timeout", model=self.model, error=str(exc))
            raise UpstreamTimeout("generation provider timed out") from exc
        except openai.APIStatusError as exc:
            logger.error(
                "openai_completion_status_error",
                model=self.model,
                status_code=exc.status_code,
                error=str(exc),
            )
            raise UpstreamError(
                f"generation provider returned HTTP {exc.status_code}",
                detail={"upstream_status": exc.status_code},
            ) from exc
        except openai.APIConnectionError as exc:
            logger.error("openai_completion_connect_error", model=self.model, error=str(exc))
            raise UpstreamError("failed to reach generation provider") from exc

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("openai_completion_no_choices", model=self.model)
            return ""
        usage = getattr(completion, "usage", None)
        logger.info(
            "openai_completion_success",
            model=self.model,
            prompt_tokens=getattr(usage, "prompt_tokens", 0),
            completion_tokens=getattr(usage, "completion_tokens", 0),
        )
        return (first_choice.message.content or "").strip()

    async def close(self) -> None:
        await self.client.close()


class PollingJobBackend:
    """Submit/poll job API: POST a job, poll its status until a terminal state.

    Polls every ``poll_interval`` seconds and gives up with ``UpstreamTimeout``
    once ``timeout`` seconds have elapsed since submission. On timeout or
    cancellation the upstream job is cancelled on a best-effort basis.
    """

    mode = ModelBackendMode.POLLING.value

    def __init__(
        self,
        base_url: str,
        *,
        model: str,
        api_key: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 700,
        poll_interval: float = 1.2,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                headers=headers,
            )
        return self._client

    async def complete(
        self,
        messages: List[dict],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        client = await self._get_client()
        deadline = self._clock() + self.timeout
        job_id = await self._submit(client, messages)
        polls = 0
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise GenerationCancelled("generation cancelled by caller")
                payload = await self._poll(client, job_id)
                polls += 1
                status = str(payload.get("status", "")).strip().lower()
                if status in SUCCESS_STATUSES:
                    logger.info("upstream_job_succeeded", job_id=job_id, polls=polls)
                    return self._extract_output(payload)
                if status in FAILURE_STATUSES:
                    logger.warning("upstream_job_failed", job_id=job_id, status=status)
                    raise UpstreamFailed(status)
                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.error(
                        "upstream_job_timeout",
                        job_id=job_id,
                        polls=polls,
                        last_status=status,
                        timeout_seconds=self.timeout,
                    )
                    raise UpstreamTimeout(
                        f"generation did not finish within {self.timeout:g} seconds"
                    )
                await self._wait(min(self.poll_interval, remaining), cancel_event)
        except (UpstreamTimeout, GenerationCancelled, asyncio.CancelledError):
            await self._release(client, job_id)
            raise

    async def _submit(self, client: httpx.AsyncClient, messages: List[dict]) -> str:
        body = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        data = await self._request(client, "POST", f"{self.base_url}/jobs", json=body)
        job_id = data.get("id") or data.get("job_id")
        if not job_id:
            raise UpstreamError("generation provider did not return a job id")
        logger.info("upstream_job_submitted", job_id=str(job_id), model=self.model)
        return str(job_id)

    async def _poll(self, client: httpx.AsyncClient, job_id: str) -> dict:
        return await self._request(client, "GET", f"{self.base_url}/jobs/{job_id}")

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> dict:
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "upstream_http_error",
                method=method,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise UpstreamError(
                f"generation provider returned HTTP {exc.response.status_code}",
                detail={"upstream_status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("upstream_transport_error", method=method, error=str(exc))
            raise UpstreamError("failed to reach generation provider") from exc
        except json.JSONDecodeError as exc:
            logger.error("upstream_invalid_json", method=method, error=str(exc))
            raise UpstreamError("generation provider returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamError("generation provider returned an unexpected payload")
        return data

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _release(self, client: httpx.AsyncClient, job_id: str) -> None:
        try:
            response = await client.post(f"{self.base_url}/jobs/{job_id}/cancel")
            logger.info(
                "upstream_job_released", job_id=job_id, status_code=response.status_code
            )
        except httpx.HTTPError as exc:
            logger.warning("upstream_job_release_failed", job_id=job_id, error=str(exc))

    @staticmethod
    def _extract_output(payload: dict) -> str:
        output = payload.get("output", payload.get("result"))
        if isinstance(output, dict):
            output = output.get("text") or output.get("content")
        if isinstance(output, list):
            output = "".join(str(part) for part in output)
        if not isinstance(output, str):
            raise UpstreamError("generation provider finished without output")
        return output.strip()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class StubBackend:
    """Deterministic backend for local runs and tests without a provider."""

    mode = ModelBackendMode.STUB.value

    async def complete(
        self,
        messages: List[dict],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        return (
            "CODE:\n"
            f"print({json.dumps(last_user)})\n"
            "---\n"
            "EXPLANATION:\n"
            "Stub reply echoing the latest prompt."
        )

    async def close(self) -> None:
        return None


def build_backend(settings: Settings) -> ModelBackend:
    mode = settings.model_backend
    if mode is ModelBackendMode.POLLING:
        if not settings.upstream_base_url:
            raise RuntimeError("MODEL_BACKEND=polling requires UPSTREAM_BASE_URL")
        return PollingJobBackend(
            settings.upstream_base_url,
            model=settings.model,
            api_key=settings.upstream_api_key,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            poll_interval=settings.poll_interval_seconds,
            timeout=settings.upstream_timeout_seconds,
        )
    if mode is ModelBackendMode.OPENAI:
        if settings.openai_api_key:
            return OpenAIChatBackend(
                settings.model,
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                timeout=settings.upstream_timeout_seconds,
            )
        logger.warning(
            "openai_api_key_missing",
            message="OPENAI_API_KEY not set; falling back to the stub backend",
        )
    return StubBackend()
