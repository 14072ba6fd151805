import random
import re
from typing import Any, Optional

import httpx

from fanout.config import FailureClass, settings
from fanout.errors import (
    InsufficientFunds,
    RateLimited,
    UpstreamUnavailable,
    ValidationFailure,
    WarmupFailure,
)
from fanout.health import HealthState
from fanout.logging_config import elapsed_ms, get_logger
from fanout.reconciliation import is_insufficient_funds
from fanout.timing import Sleeper, jitter


logger = get_logger(__name__)

IDEMPOTENCY_HEADER = "X-Idempotency-Key"
ROUTING_HEADER = "x-render-routing"
ROUTER_THROTTLE_RE = re.compile(r"rate-limited|hibernate", re.IGNORECASE)
RATE_LIMIT_PHRASES = (
    "rate limit",
    "too many requests",
    "max 4 req/s",
    "max requests per second",
)


def body_sample(response: httpx.Response, limit: int = 200) -> str:
    try:
        return response.text[:limit]
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""


def error_message(response: httpx.Response) -> str:
    """Best-effort error text from a provider response body."""
    try:
        body = response.json()
    except ValueError:
        return body_sample(response)
    if isinstance(body, dict):
        error = body.get("error") or body.get("message") or body.get("detail")
        if isinstance(error, dict):
            error = error.get("message") or error.get("code")
        if error:
            return str(error)
    return body_sample(response)


def looks_like_challenge(sample: str) -> bool:
    normalized = sample.lower()
    return (
        "<title>just a moment" in normalized
        or "cf-ray" in normalized
        or ("<html" in normalized and "challenge" in normalized)
    )


def is_router_throttled(response: httpx.Response) -> bool:
    routing = response.headers.get(ROUTING_HEADER, "")
    return bool(ROUTER_THROTTLE_RE.search(routing)) or looks_like_challenge(body_sample(response))


def classify_response(response: httpx.Response) -> FailureClass:
    status = response.status_code
    if status < 400:
        return FailureClass.OK
    if is_router_throttled(response):
        return FailureClass.ROUTER_THROTTLED
    if status == 429:
        return FailureClass.RATE_LIMITED
    if status == 400:
        message = error_message(response).lower()
        if any(phrase in message for phrase in RATE_LIMIT_PHRASES):
            return FailureClass.RATE_LIMITED
    if status >= 500:
        return FailureClass.SERVER_ERROR
    return FailureClass.CLIENT_ERROR


class BackoffSchedule:
    """
    Exponential delays for one failure class within one call:
    base * 2**n capped at ``cap``, plus optional jitter. Successive delays
    never decrease.
    """

    def __init__(self, base: float, cap: float, max_retries: int, jitter_seconds: float = 0.0, rng: Optional[random.Random] = None):
        self.base = base
        self.cap = cap
        self.max_retries = max_retries
        self.jitter_seconds = jitter_seconds
        self.rng = rng
        self.attempts = 0
        self._last = 0.0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_retries

    def next_delay(self) -> float:
        raw = min(self.base * (2 ** self.attempts), self.cap) + jitter(self.jitter_seconds, self.rng)
        delay = max(raw, self._last)
        self._last = delay
        self.attempts += 1
        return delay


class ResilientGateway:
    """
    Every outbound call to the external blockchain API goes through here:
    cold-start warm-up, rate-limit classification, bounded retries and
    idempotency-key forwarding.
    """

    def __init__(
        self,
        base_url: str | None = None,
        health: HealthState | None = None,
        sleeper: Sleeper | None = None,
        rng: random.Random | None = None,
        client: httpx.AsyncClient | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        retry_max_delay_seconds: float | None = None,
        rate_limit_max_retries: int | None = None,
        rate_limit_backoff_seconds: float | None = None,
        rate_limit_max_delay_seconds: float | None = None,
        rate_limit_jitter_seconds: float | None = None,
        warmup_attempts: int | None = None,
        warmup_cooldown_seconds: float | None = None,
        warmup_retry_delay_seconds: float | None = None,
    ):
        base_url = base_url or str(settings.external_api_base_url)
        headers = {
            "User-Agent": settings.external_api_user_agent,
            "Accept": "application/json,text/html;q=0.9,*/*;q=0.8",
        }
        if settings.external_api_key:
            headers["Authorization"] = f"Bearer {settings.external_api_key}"
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=settings.request_timeout_seconds, headers=headers)
        self.health = health or HealthState()
        self.sleeper = sleeper or Sleeper()
        self.rng = rng
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds if retry_max_delay_seconds is not None else settings.retry_max_delay_seconds
        self.rate_limit_max_retries = rate_limit_max_retries if rate_limit_max_retries is not None else settings.rate_limit_max_retries
        self.rate_limit_backoff_seconds = rate_limit_backoff_seconds if rate_limit_backoff_seconds is not None else settings.rate_limit_backoff_seconds
        self.rate_limit_max_delay_seconds = rate_limit_max_delay_seconds if rate_limit_max_delay_seconds is not None else settings.rate_limit_max_delay_seconds
        self.rate_limit_jitter_seconds = rate_limit_jitter_seconds if rate_limit_jitter_seconds is not None else settings.rate_limit_jitter_seconds
        self.warmup_attempts = warmup_attempts if warmup_attempts is not None else settings.warmup_attempts
        self.warmup_cooldown_seconds = warmup_cooldown_seconds if warmup_cooldown_seconds is not None else settings.warmup_cooldown_seconds
        self.warmup_retry_delay_seconds = warmup_retry_delay_seconds if warmup_retry_delay_seconds is not None else settings.warmup_retry_delay_seconds

    def server_error_schedule(self) -> BackoffSchedule:
        return BackoffSchedule(self.retry_backoff_seconds, self.retry_max_delay_seconds, self.max_retries)

    def rate_limit_schedule(self) -> BackoffSchedule:
        return BackoffSchedule(
            self.rate_limit_backoff_seconds,
            self.rate_limit_max_delay_seconds,
            self.rate_limit_max_retries,
            jitter_seconds=self.rate_limit_jitter_seconds,
            rng=self.rng,
        )

    async def warm_up(self, force: bool = False, reason: str = "unspecified") -> None:
        await self.health.ensure(lambda: self._warm_up(reason), force=force)

    async def _warm_up(self, reason: str) -> None:
        asleep = 0
        transient_retried = False
        while True:
            started = self.sleeper.monotonic()
            try:
                response = await self.client.request("GET", settings.health_path, timeout=settings.health_timeout_seconds)
                status = response.status_code
                throttled = status == 429 or (status >= 400 and is_router_throttled(response))
            except httpx.RequestError as exc:
                logger.warning("Warm-up probe transport error reason=%s error=%s", reason, exc)
                status = 0
                throttled = False
            logger.info(
                "Warm-up probe reason=%s status=%s elapsed_ms=%s",
                reason,
                status,
                elapsed_ms(started, self.sleeper.monotonic()),
            )

            if throttled:
                # a sleeping instance answers 429 until it is up
                asleep += 1
                if asleep >= self.warmup_attempts:
                    raise WarmupFailure(
                        "The blockchain API is waking up but did not respond in time. Please retry in a minute.",
                        context={"status": status, "attempts": asleep},
                    )
                delay = self.warmup_cooldown_seconds * asleep
                logger.warning("Warm-up still asleep (status=%s), cooling down %.1fs attempt=%s", status, delay, asleep)
                await self.sleeper.sleep(delay)
                continue

            if status == 0 or status >= 500:
                if transient_retried:
                    raise WarmupFailure(
                        f"Blockchain API warm-up failed with upstream status {status}.",
                        context={"status": status},
                    )
                transient_retried = True
                logger.warning("Warm-up transient failure status=%s, retrying once in %.1fs", status, self.warmup_retry_delay_seconds)
                await self.sleeper.sleep(self.warmup_retry_delay_seconds)
                continue

            self.health.mark_warm()
            logger.info("Blockchain API warm-up succeeded status=%s", status)
            return

    async def request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        idempotency_key: str | None = None,
        operation: str | None = None,
    ) -> httpx.Response:
        operation = operation or f"{method} {path}"
        await self.warm_up(reason=operation)

        headers: dict[str, str] = {}
        payload = json
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
            payload = {**(json or {}), "idempotencyKey": idempotency_key}

        server_backoff = self.server_error_schedule()
        rate_backoff = self.rate_limit_schedule()
        router_retried = False
        attempt = 0
        while True:
            attempt += 1
            started = self.sleeper.monotonic()
            try:
                response = await self.client.request(method, path, json=payload, headers=headers)
            except httpx.RequestError as exc:
                logger.warning(
                    "API attempt failed operation=%s attempt=%s classification=%s elapsed_ms=%s error=%s",
                    operation,
                    attempt,
                    FailureClass.NETWORK_ERROR.value,
                    elapsed_ms(started, self.sleeper.monotonic()),
                    exc,
                )
                if server_backoff.exhausted:
                    self.health.invalidate()
                    raise UpstreamUnavailable(
                        f"Network error calling blockchain API ({operation}): {exc}",
                        status_code=503,
                        code="BLOCKCHAIN_API_NETWORK_FAILURE",
                    ) from exc
                await self.sleeper.sleep(server_backoff.next_delay())
                continue

            failure = classify_response(response)
            logger.info(
                "API attempt operation=%s attempt=%s status=%s classification=%s elapsed_ms=%s",
                operation,
                attempt,
                response.status_code,
                failure.value,
                elapsed_ms(started, self.sleeper.monotonic()),
            )

            if failure == FailureClass.OK:
                self.health.mark_warm()
                return response

            if failure == FailureClass.ROUTER_THROTTLED:
                context = {"status": response.status_code, "render_routing": response.headers.get(ROUTING_HEADER), "body_sample": body_sample(response)}
                if router_retried:
                    raise RateLimited(
                        "Upstream router is rate limiting the blockchain API. Please retry after it wakes.",
                        context=context,
                    )
                router_retried = True
                logger.warning("Router-level throttling on %s, forcing re-warm before single retry", operation)
                self.health.invalidate()
                await self.warm_up(force=True, reason=f"{operation}:router")
                continue

            if failure == FailureClass.RATE_LIMITED:
                # a throttled service may be going cold; warm up again on the next call
                self.health.invalidate()
                if rate_backoff.exhausted:
                    logger.error("Max rate-limit retries (%s) exceeded for %s", rate_backoff.max_retries, operation)
                    raise RateLimited(
                        f"Blockchain API rate limited {operation} after {rate_backoff.attempts} retries: {error_message(response)}",
                        context={"status": response.status_code},
                    )
                delay = rate_backoff.next_delay()
                logger.warning(
                    "Rate limit hit on %s, retrying in %.2fs (attempt %s/%s)",
                    operation,
                    delay,
                    rate_backoff.attempts,
                    rate_backoff.max_retries,
                )
                await self.sleeper.sleep(delay)
                continue

            if failure == FailureClass.SERVER_ERROR:
                message = error_message(response)
                if is_insufficient_funds(message):
                    raise InsufficientFunds(message, context={"status": response.status_code})
                if server_backoff.exhausted:
                    logger.error("Max retries (%s) exceeded for %s", server_backoff.max_retries, operation)
                    raise UpstreamUnavailable(
                        f"Blockchain API {operation} failed with status {response.status_code}: {error_message(response)}",
                        status_code=503 if response.status_code in (502, 503, 504) else 502,
                        context={"status": response.status_code},
                    )
                delay = server_backoff.next_delay()
                logger.info("Server error on %s, retrying in %.2fs (attempt %s/%s)", operation, delay, server_backoff.attempts, server_backoff.max_retries)
                await self.sleeper.sleep(delay)
                continue

            # the service answered, so it is awake even though the call was refused
            self.health.mark_warm()
            message = error_message(response)
            if is_insufficient_funds(message):
                raise InsufficientFunds(message, context={"status": response.status_code})
            raise ValidationFailure(
                f"Blockchain API rejected {operation} with status {response.status_code}: {message}",
                status_code=response.status_code,
                code="BLOCKCHAIN_API_REJECTED",
                context={"status": response.status_code, "error": message},
            )

    async def call(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        idempotency_key: str | None = None,
        operation: str | None = None,
    ) -> Any:
        response = await self.request(method, path, json=json, idempotency_key=idempotency_key, operation=operation)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                f"Blockchain API returned a non-JSON body for {operation or path}",
                code="BLOCKCHAIN_API_INVALID_RESPONSE",
            ) from exc

    async def aclose(self) -> None:
        await self.client.aclose()
