"""
Health prober for the exporter's metrics endpoint.

Each tick issues exactly one authenticated GET and races it against a
request timeout and the prober's cancellation token:

1. The response completes first - status, content type and body length are
   checked; success schedules the next tick after the poll interval.
2. The timeout fires first - the request is aborted and reported as TIMEOUT.
3. The token is cancelled first - the request is aborted and the loop stops
   without reporting anything.

The first non-successful outcome ends the loop and is returned to the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus

import httpx

from e2e_harness.core.cancellation import CancellationToken
from e2e_harness.core.config import HarnessSettings
from e2e_harness.core.logging import get_logger

logger = get_logger("prober")

OPENMETRICS_CONTENT_TYPE = "application/openmetrics-text"


class ProbeResult(Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    PROTOCOL_VIOLATION = "protocol_violation"


@dataclass(frozen=True)
class ProbeOutcome:
    """Outcome of a single probe attempt."""

    result: ProbeResult
    status_code: int | None = None
    content_type: str | None = None
    byte_count: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.result is ProbeResult.SUCCESS

    def describe(self) -> str:
        if self.result is ProbeResult.TIMEOUT:
            return "Request timed out"
        if self.result is ProbeResult.TRANSPORT_ERROR:
            return f"Request errored: {self.error}"
        if self.status_code is None:
            return f"Request failed: {self.error}"
        try:
            phrase = HTTPStatus(self.status_code).phrase
        except ValueError:
            phrase = "Unknown"
        text = f"Response: {self.status_code} {phrase} {self.content_type} {self.byte_count}B"
        if self.error:
            text += f" ({self.error})"
        return text


def evaluate_response(
    status_code: int, content_type: str | None, byte_count: int
) -> ProbeOutcome:
    """Check a completed response against the metrics endpoint contract."""
    error = None
    if not 200 <= status_code <= 299:
        error = f"Received unsuccessful response with status {status_code}"
    elif not content_type or OPENMETRICS_CONTENT_TYPE not in content_type:
        error = f"Received response with content type {content_type}"
    elif not byte_count:
        error = "Received empty response"

    return ProbeOutcome(
        result=ProbeResult.PROTOCOL_VIOLATION if error else ProbeResult.SUCCESS,
        status_code=status_code,
        content_type=content_type,
        byte_count=byte_count,
        error=error,
    )


class HealthProber:
    """
    Polls the metrics endpoint until the first failure or cancellation.

    Args:
        url: Full metrics URL
        credential: Shared key, sent as the Basic auth password
        user: Basic auth user name
        poll_interval: Seconds between the end of one attempt and the next
        request_timeout: Seconds an attempt may take before it is aborted
        verify: TLS certificate validation (relaxed for self-signed fixtures)
        transport: Optional httpx transport, mainly for tests
    """

    def __init__(
        self,
        url: str,
        credential: str,
        *,
        user: str = "metrics",
        poll_interval: float = 5.0,
        request_timeout: float = 5.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.attempts = 0
        self.outcomes: list[ProbeOutcome] = []
        # Our own timer is the single timeout authority.
        self._client = httpx.AsyncClient(
            auth=httpx.BasicAuth(user, credential),
            verify=verify,
            timeout=None,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: HarnessSettings,
        credential: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "HealthProber":
        return cls(
            settings.metrics_url,
            credential,
            user=settings.metrics_user,
            poll_interval=settings.poll_interval,
            request_timeout=settings.request_timeout,
            verify=not settings.is_https,
            transport=transport,
        )

    async def __aenter__(self) -> "HealthProber":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def run(self, token: CancellationToken) -> ProbeOutcome | None:
        """
        Probe until the first failure.

        Returns the failing outcome, or None if the token was cancelled.
        """
        logger.info("Starting fetch loop")
        while not token.cancelled:
            outcome = await self.probe_once(token)
            if outcome is None:
                break
            if not outcome.ok:
                return outcome
            if not await token.sleep(self.poll_interval):
                break
        logger.info("Fetch loop stopped")
        return None

    async def probe_once(self, token: CancellationToken) -> ProbeOutcome | None:
        """
        Run one attempt.

        Returns None if the token was cancelled before the attempt settled.
        Nothing started by the attempt outlives this call.
        """
        self.attempts += 1
        fetch = asyncio.ensure_future(self._fetch())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch, cancelled},
                timeout=self.request_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (fetch, cancelled):
                if not task.done():
                    task.cancel()
            await asyncio.gather(fetch, cancelled, return_exceptions=True)

        if fetch in done and not fetch.cancelled():
            try:
                outcome = fetch.result()
            except httpx.TimeoutException as e:
                outcome = ProbeOutcome(ProbeResult.TIMEOUT, error=str(e) or type(e).__name__)
            except httpx.TransportError as e:
                if token.cancelled:
                    # Connection torn down by the shutdown itself.
                    logger.debug(f"Suppressed transport error during shutdown: {e!r}")
                    return None
                outcome = ProbeOutcome(
                    ProbeResult.TRANSPORT_ERROR, error=str(e) or type(e).__name__
                )
            except httpx.HTTPError as e:
                outcome = ProbeOutcome(ProbeResult.PROTOCOL_VIOLATION, error=str(e))
        elif cancelled in done or token.cancelled:
            logger.info("Request aborted")
            return None
        else:
            outcome = ProbeOutcome(ProbeResult.TIMEOUT)

        self.outcomes.append(outcome)
        if outcome.ok:
            logger.info(outcome.describe())
        else:
            logger.error(outcome.describe())
        return outcome

    async def _fetch(self) -> ProbeOutcome:
        byte_count = 0
        async with self._client.stream("GET", self.url) as response:
            async for chunk in response.aiter_bytes():
                byte_count += len(chunk)
            return evaluate_response(
                response.status_code,
                response.headers.get("content-type"),
                byte_count,
            )
