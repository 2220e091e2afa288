"""Batch orchestrator: drives messages through the classifier.

Splits messages into fixed-size batches, classifies each batch with bounded
exponential-backoff retries, paces consecutive batches, and aggregates
decisions and per-batch errors.

Batches run strictly one after another. A batch that fails (retries
exhausted, or a non-retryable error) contributes no decisions and one error
string; later batches still run.
"""

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol, TypeVar

import httpx

from mailfilter.executors.email_classifier import align_decisions
from mailfilter.schemas.filtering import (
    BatchFilterResult,
    EmailMessage,
    EmailSummary,
    FilterDecision,
    FilterRule,
    RetryConfig,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Consecutive failed batches before the circuit-breaker pause.
CIRCUIT_BREAKER_THRESHOLD = 3

# Jitter is +/- this fraction of the capped delay.
JITTER_RATIO = 0.25

RETRYABLE_ERROR_MARKERS: tuple[str, ...] = (
    # rate limiting
    "rate limit",
    "429",
    # timeouts
    "timeout",
    "timed out",
    # transient server errors
    "500",
    "502",
    "503",
    "504",
    # network
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "network",
)


class Classifier(Protocol):
    async def classify(
        self,
        emails: Sequence[EmailSummary],
        rules: Sequence[FilterRule],
    ) -> list[FilterDecision]: ...


def split_batches(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """Partition items into consecutive batches of at most batch_size."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


def describe_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class BatchFailedError(Exception):
    """A batch gave up after one or more classifier attempts."""

    def __init__(self, attempts: int, error: Exception) -> None:
        super().__init__(f"failed after {attempts} attempt(s): {describe_error(error)}")
        self.attempts = attempts
        self.error = error


def is_retryable_error(exc: BaseException) -> bool:
    """True for rate limits, timeouts, 5xx responses and network errors.

    Every httpx transport failure counts as transient, whatever its message
    (``ReadError`` is often raised with none).
    """
    if isinstance(exc, httpx.TransportError):
        return True
    text = f"{type(exc).__name__} {exc}".lower()
    return any(marker in text for marker in RETRYABLE_ERROR_MARKERS)


class BatchOrchestrator:
    """Runs the classifier over batches with retry, backoff and pacing.

    Usage::

        orchestrator = BatchOrchestrator(classifier, RetryConfig(max_retries=3))
        result = await orchestrator.run(emails, rules, batch_size=50)

    ``sleep`` and ``rng`` are injectable so backoff can be tested without
    real waiting and with deterministic jitter.
    """

    def __init__(
        self,
        classifier: Classifier,
        retry_config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._classifier = classifier
        self._retry = retry_config or RetryConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry

    def calculate_delay(self, attempt: int) -> int:
        """Exponential backoff with +/-25% jitter, in whole milliseconds.

        The jittered value never exceeds max_delay_ms.
        """
        exponential = self._retry.base_delay_ms * 2**attempt
        capped = min(exponential, self._retry.max_delay_ms)
        jitter = capped * JITTER_RATIO * (self._rng.random() * 2 - 1)
        return min(math.floor(capped + jitter), self._retry.max_delay_ms)

    async def _wait(self, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)

    async def run(
        self,
        emails: Sequence[EmailMessage],
        rules: Sequence[FilterRule],
        batch_size: int,
    ) -> BatchFilterResult:
        """Classify all emails and return aggregated decisions and errors."""
        summaries = [email.summarize() for email in emails]
        self._logger.debug("Prepared %d email(s) for classification", len(summaries))

        batches = split_batches(summaries, batch_size)
        self._logger.info(
            "Split %d email(s) into %d batch(es)", len(summaries), len(batches)
        )
        return await self._process_batches(batches, list(rules))

    async def _process_batches(
        self,
        batches: list[list[EmailSummary]],
        rules: list[FilterRule],
    ) -> BatchFilterResult:
        result = BatchFilterResult()
        consecutive_failures = 0

        for i, batch in enumerate(batches):
            batch_number = i + 1
            has_more = i < len(batches) - 1
            self._logger.info(
                "Processing batch %d/%d (%d emails)",
                batch_number,
                len(batches),
                len(batch),
            )

            try:
                decisions = await self._process_batch_with_retry(
                    batch, rules, batch_number
                )
            except BatchFailedError as exc:
                consecutive_failures += 1
                result.failed_count += len(batch)
                message = f"Batch {batch_number} {exc}"
                result.errors.append(message)
                self._logger.error(message)

                if consecutive_failures >= CIRCUIT_BREAKER_THRESHOLD and has_more:
                    self._logger.warning(
                        "%d consecutive batch failures, pausing %dms before continuing",
                        consecutive_failures,
                        self._retry.max_delay_ms,
                    )
                    await self._wait(self._retry.max_delay_ms)
            else:
                result.decisions.extend(decisions)
                result.processed_count += len(batch)
                consecutive_failures = 0

            if has_more:
                await self._wait(self.calculate_delay(consecutive_failures))

        return result

    async def _process_batch_with_retry(
        self,
        batch: list[EmailSummary],
        rules: list[FilterRule],
        batch_number: int,
    ) -> list[FilterDecision]:
        """Classify one batch, retrying retryable errors with backoff.

        Raises:
            BatchFailedError: Wrapping the last error once retries are
                exhausted, or the first non-retryable error.
        """
        max_attempts = self._retry.max_retries + 1
        attempt = 0
        while True:
            try:
                decisions = await self._classifier.classify(batch, rules)
                return align_decisions(batch, decisions)
            except Exception as exc:
                if not is_retryable_error(exc):
                    self._logger.error(
                        "Non-retryable error for batch %d: %s",
                        batch_number,
                        describe_error(exc),
                    )
                    raise BatchFailedError(attempt + 1, exc) from exc
                self._logger.warning(
                    "Batch %d attempt %d/%d failed: %s",
                    batch_number,
                    attempt + 1,
                    max_attempts,
                    describe_error(exc),
                )
                if attempt >= self._retry.max_retries:
                    raise BatchFailedError(attempt + 1, exc) from exc

            attempt += 1
            delay_ms = self.calculate_delay(attempt)
            self._logger.info(
                "Retrying batch %d (attempt %d/%d) after %dms",
                batch_number,
                attempt + 1,
                max_attempts,
                delay_ms,
            )
            await self._wait(delay_ms)
