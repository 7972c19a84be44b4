"""Resilient access to the LLM-backed actor field extraction.

Wraps a chat-completion transport with a result cache, a circuit breaker and
tenacity-driven retries with exponential backoff.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Protocol

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from intake.cache import CacheBackend
from intake.config import ExtractionSettings, OpenAISettings, settings
from intake.errors import ExtractionError
from intake.pipelines.normalization import description_fingerprint

from .results import ExtractionResult, MalformedResponse

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "extraction:"
CIRCUIT_FAILURES_KEY = "extraction:circuit:failures"
CIRCUIT_LAST_FAILURE_KEY = "extraction:circuit:last_failure"

SYSTEM_PROMPT = """You extract structured details about a person from a short self-description.

Return a single JSON object with these keys:
- first_name: the person's first name
- last_name: the person's last name
- address: full address (street, city, state/country)
- height: height as written, or null
- weight: weight as written, or null
- gender: "male", "female", "other" or null. Use explicit statements or pronouns
  (he/him = male, she/her = female); use null when unclear
- age: age as an integer, or null

first_name, last_name and address are required; infer them from context when they are
implied but not spelled out. Use null for optional keys that are not mentioned.
Respond with JSON only.

Example:
{"first_name": "John", "last_name": "Smith", "address": "123 Main St, Los Angeles, CA",
 "height": "6'2\\"", "weight": "180 lbs", "gender": "male", "age": 35}"""


# =============================================================================
# Failure taxonomy
# =============================================================================


class RateLimited(ExtractionError):
    retryable = True
    status_code = 503

    def __init__(self, request_id: str | None = None) -> None:
        super().__init__("Extraction API rate limit exceeded", request_id=request_id)


class AuthFailed(ExtractionError):
    status_code = 503

    def __init__(self, request_id: str | None = None) -> None:
        super().__init__("Extraction API authentication failed", request_id=request_id)


class InvalidResponse(ExtractionError):
    status_code = 502

    def __init__(self, reason: str, request_id: str | None = None, api_response: dict | None = None) -> None:
        super().__init__(
            f"Extraction API returned invalid response format: {reason}",
            request_id=request_id,
            api_response=api_response,
        )


class Timeout(ExtractionError):
    retryable = True
    status_code = 504

    def __init__(self, request_id: str | None = None) -> None:
        super().__init__("Extraction API request timed out", request_id=request_id)


class ServerError(ExtractionError):
    status_code = 502

    def __init__(self, code: int, request_id: str | None = None, retryable: bool | None = None) -> None:
        super().__init__(f"Extraction API server error (HTTP {code})", request_id=request_id)
        self.http_status = code
        self.retryable = code >= 500 if retryable is None else retryable


class InsufficientCredits(ExtractionError):
    status_code = 503

    def __init__(self, request_id: str | None = None) -> None:
        super().__init__("Insufficient extraction API credits", request_id=request_id)


class ContentPolicyViolation(ExtractionError):
    status_code = 502
    counts_toward_circuit = False

    def __init__(self, request_id: str | None = None) -> None:
        super().__init__("Content violates the extraction API usage policies", request_id=request_id)


class BadRequest(ExtractionError):
    status_code = 502
    counts_toward_circuit = False

    def __init__(self, detail: str, request_id: str | None = None) -> None:
        super().__init__(f"Extraction API rejected the request: {detail}", request_id=request_id)


class NetworkError(ExtractionError):
    retryable = True
    status_code = 503

    def __init__(self, detail: str, request_id: str | None = None) -> None:
        super().__init__(f"Network error: {detail}", request_id=request_id)


class CircuitOpen(ExtractionError):
    status_code = 503
    counts_toward_circuit = False

    def __init__(self, request_id: str | None = None) -> None:
        super().__init__("Extraction circuit breaker is open", request_id=request_id)


def _vendor_error_code(exc: Exception) -> str | None:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        if isinstance(body.get("error"), dict):
            body = body["error"]
        code = body.get("code") or body.get("type")
        return str(code) if code else None
    return getattr(exc, "code", None)


def classify_vendor_error(exc: Exception, request_id: str | None = None) -> ExtractionError:
    """Translate a transport exception into the extraction failure taxonomy."""
    if isinstance(exc, ExtractionError):
        return exc

    import openai

    if isinstance(exc, (openai.APITimeoutError, asyncio.TimeoutError)):
        return Timeout(request_id)
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(str(exc) or type(exc).__name__, request_id)

    status = getattr(exc, "status_code", None)
    vendor_code = _vendor_error_code(exc)

    if isinstance(exc, openai.AuthenticationError) or status == 401:
        return AuthFailed(request_id)
    if status == 402 or vendor_code == "insufficient_quota":
        return InsufficientCredits(request_id)
    if isinstance(exc, openai.RateLimitError) or status == 429:
        return RateLimited(request_id)
    if status == 408:
        return Timeout(request_id)
    if isinstance(exc, openai.BadRequestError) or status == 400:
        if vendor_code in {"content_policy_violation", "content_filter"}:
            return ContentPolicyViolation(request_id)
        return BadRequest(getattr(exc, "message", str(exc)), request_id)
    if isinstance(status, int):
        return ServerError(status, request_id)

    message = str(exc).lower()
    if "timeout" in message or "timed out" in message:
        return Timeout(request_id)
    if "connection" in message:
        return NetworkError(str(exc), request_id)

    logger.error(f"Unclassified extraction failure: {exc!r}", extra={"request_id": request_id})
    return ServerError(500, request_id, retryable=False)


# =============================================================================
# Transport
# =============================================================================


class CompletionTransport(Protocol):
    """Performs one raw chat-completion call and returns the response dict."""

    model: str

    async def complete(self, description: str, *, system_prompt: str) -> dict[str, Any]:
        ...


class OpenAIChatTransport:
    """Chat-completions transport backed by ``openai.AsyncOpenAI``."""

    def __init__(self, config: OpenAISettings | None = None) -> None:
        self.config = config or settings.openai
        self.model = self.config.model
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            # Retries are owned by ExtractionClient
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                timeout=self.config.timeout,
                max_retries=0,
            )
        return self._client

    async def complete(self, description: str, *, system_prompt: str) -> dict[str, Any]:
        client = self._ensure_client()
        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": description},
            ],
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            response_format={"type": "json_object"},
        )
        return response.model_dump()


# =============================================================================
# Circuit breaker
# =============================================================================


class CircuitBreaker:
    """Failure-count breaker whose state lives in the shared cache backend."""

    def __init__(
        self,
        cache: CacheBackend,
        *,
        threshold: int,
        cooldown: int,
        counter_ttl: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.threshold = threshold
        self.cooldown = cooldown
        self.counter_ttl = counter_ttl
        self._clock = clock

    async def is_open(self) -> bool:
        failures = int(await self.cache.get(CIRCUIT_FAILURES_KEY, 0) or 0)
        if failures < self.threshold:
            return False
        last_failure = await self.cache.get(CIRCUIT_LAST_FAILURE_KEY)
        return last_failure is not None and (self._clock() - float(last_failure)) < self.cooldown

    async def record_failure(self) -> int:
        failures = await self.cache.increment(CIRCUIT_FAILURES_KEY, 1, ttl=self.counter_ttl, refresh_ttl=True)
        await self.cache.set(CIRCUIT_LAST_FAILURE_KEY, self._clock(), ttl=self.counter_ttl)
        return failures

    async def reset(self) -> None:
        await self.cache.delete(CIRCUIT_FAILURES_KEY)
        await self.cache.delete(CIRCUIT_LAST_FAILURE_KEY)

    async def status(self) -> str:
        return "open" if await self.is_open() else "closed"


# =============================================================================
# Client
# =============================================================================


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionError) and exc.retryable


class ExtractionClient:
    """Cached, retrying, circuit-protected access to the extraction backend.

    Args:
        cache: Shared cache backend for results and breaker counters
        transport: Chat-completion transport (defaults to OpenAI)
        config: Retry/cache/breaker settings
        sleep: Awaitable used between retry attempts
        clock: Wall clock used by the circuit breaker
    """

    def __init__(
        self,
        cache: CacheBackend,
        transport: CompletionTransport | None = None,
        config: ExtractionSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.transport = transport or OpenAIChatTransport()
        self.config = config or settings.extraction
        self._sleep = sleep
        self.breaker = CircuitBreaker(
            cache,
            threshold=self.config.circuit_threshold,
            cooldown=self.config.circuit_cooldown,
            counter_ttl=self.config.circuit_counter_ttl,
            clock=clock,
        )

    @property
    def model(self) -> str:
        return getattr(self.transport, "model", "unknown")

    @staticmethod
    def cache_key(description: str) -> str:
        return CACHE_KEY_PREFIX + description_fingerprint(description)

    async def circuit_status(self) -> str:
        return await self.breaker.status()

    async def extract(self, description: str) -> ExtractionResult:
        """Extract actor fields from a description.

        Raises:
            ExtractionError: One of the taxonomy subclasses above
        """
        key = self.cache_key(description)
        cached = await self.cache.get(key)
        if cached is not None:
            try:
                result = ExtractionResult.from_api_response(json.loads(cached), from_cache=True)
            except (MalformedResponse, TypeError, ValueError):
                logger.warning("Dropping unreadable cached extraction", extra={"cache_key": key})
                await self.cache.delete(key)
            else:
                logger.info("Extraction served from cache", extra={"cache_key": key})
                return result

        request_id = f"req_{uuid.uuid4().hex[:16]}"

        if await self.breaker.is_open():
            logger.warning("Extraction rejected: circuit open", extra={"request_id": request_id})
            raise CircuitOpen(request_id)

        try:
            response = await self._call_with_retries(description, request_id)
            try:
                result = ExtractionResult.from_api_response(response)
            except MalformedResponse as e:
                raise InvalidResponse(str(e), request_id, api_response=response) from e
        except ExtractionError as e:
            logger.error(
                f"Extraction failed: {e.message}",
                extra={"request_id": request_id, "kind": type(e).__name__, "retryable": e.retryable},
            )
            if e.counts_toward_circuit:
                failures = await self.breaker.record_failure()
                logger.warning(
                    f"Circuit breaker failure count now {failures}",
                    extra={"request_id": request_id},
                )
            raise

        await self.breaker.reset()

        # Incomplete results are not cached so a retry gets a fresh completion
        if result.has_required_fields:
            await self.cache.set(key, json.dumps(response, default=str), ttl=self.config.cache_ttl)

        logger.info(
            "Extraction successful",
            extra={
                "request_id": request_id,
                "model": result.model,
                "tokens_used": result.tokens_used,
                "confidence_score": result.confidence_score,
            },
        )
        return result

    async def _call_with_retries(self, description: str, request_id: str) -> dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.backoff_multiplier, max=self.config.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry(request_id),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._call_once(
                    description, request_id, attempt.retry_state.attempt_number
                )
        return response

    async def _call_once(self, description: str, request_id: str, attempt_number: int) -> dict[str, Any]:
        logger.info(
            "Calling extraction API",
            extra={
                "request_id": request_id,
                "attempt": attempt_number,
                "description_length": len(description),
            },
        )
        try:
            return await self.transport.complete(description, system_prompt=SYSTEM_PROMPT)
        except ExtractionError:
            raise
        except Exception as e:
            raise classify_vendor_error(e, request_id) from e

    @staticmethod
    def _log_retry(request_id: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"Extraction attempt {retry_state.attempt_number} failed, retrying: {exc}",
                extra={
                    "request_id": request_id,
                    "attempt": retry_state.attempt_number,
                    "delay": retry_state.next_action.sleep if retry_state.next_action else None,
                },
            )

        return before_sleep
