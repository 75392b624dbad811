"""
Retry with exponential backoff and jitter.

Only failures classified as retryable (network, server) are re-attempted;
every other kind surfaces on the first failure. Callers always receive
either the operation's result or an AppError carrying the classification.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from listos.core.errors import AppError, ClassifiedError, ErrorKind, classify_error, to_app_error
from listos.core.metrics import retry_attempts_total

logger = logging.getLogger("listos.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOptions:
    """Backoff curve. ``max_retries`` counts re-attempts after the first call."""

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    backoff_factor: float = 2.0
    jitter: float = 0.2
    deadline: Optional[float] = None  # overall seconds, None = bounded by max_retries only

    @classmethod
    def from_settings(cls, cfg, *, initial_delay: Optional[float] = None, deadline: Optional[float] = None) -> "RetryOptions":
        return cls(
            max_retries=cfg.RETRY_MAX_RETRIES,
            initial_delay=initial_delay if initial_delay is not None else cfg.RETRY_INITIAL_DELAY_SECONDS,
            max_delay=cfg.RETRY_MAX_DELAY_SECONDS,
            backoff_factor=cfg.RETRY_BACKOFF_FACTOR,
            jitter=cfg.RETRY_JITTER,
            deadline=deadline,
        )


def compute_backoff(attempt: int, options: RetryOptions, rand: Callable[[], float] = random.random) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based)."""
    base = min(options.initial_delay * (options.backoff_factor ** (attempt - 1)), options.max_delay)
    spread = 1 - options.jitter + rand() * 2 * options.jitter
    return base * spread


class RetryPolicy:
    """Executes callables under a RetryOptions curve.

    ``sleep``, ``clock`` and ``rand`` are injectable so tests can observe the
    schedule without waiting on it.
    """

    def __init__(
        self,
        options: Optional[RetryOptions] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
    ):
        self.options = options or RetryOptions()
        self._sleep = sleep
        self._clock = clock
        self._rand = rand

    def run(self, operation: Callable[[], T], *, name: str = "operation") -> T:
        opts = self.options
        started = self._clock()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
            except Exception as exc:
                kind = classify_error(exc)
                retry_attempts_total.inc(labels={"operation": name, "kind": kind.value})

                if not kind.retryable or attempt > opts.max_retries:
                    self._log_give_up(name, exc, kind, attempt)
                    if isinstance(exc, AppError):
                        raise
                    raise to_app_error(exc, operation=name, attempts=attempt) from exc

                delay = compute_backoff(attempt, opts, self._rand)
                if opts.deadline is not None and (self._clock() - started) + delay > opts.deadline:
                    logger.warning(
                        "retry.deadline_exceeded",
                        extra={"operation": name, "attempt": attempt, "error_kind": kind.value},
                    )
                    raise ClassifiedError(
                        f"{name} did not complete within {opts.deadline:.1f}s",
                        kind=ErrorKind.NETWORK,
                        attempts=attempt,
                        code="deadline_exceeded",
                        operation=name,
                    ) from exc

                logger.warning(
                    "retry.scheduled",
                    extra={
                        "operation": name,
                        "attempt": attempt,
                        "error_kind": kind.value,
                        "delay_ms": int(delay * 1000),
                    },
                )
                self._sleep(delay)
                continue

            if attempt > 1:
                logger.info("retry.succeeded", extra={"operation": name, "attempt": attempt})
            return result

    def __call__(self, operation: Callable[[], T], *, name: str = "operation") -> T:
        return self.run(operation, name=name)

    @staticmethod
    def _log_give_up(name: str, exc: Exception, kind: ErrorKind, attempt: int) -> None:
        level = logging.ERROR if kind.retryable else logging.WARNING
        msg = "retry.exhausted" if kind.retryable else "retry.terminal"
        logger.log(
            level,
            msg,
            extra={"operation": name, "attempt": attempt, "error_kind": kind.value, "error_code": type(exc).__name__},
        )


def with_retry(operation: Callable[[], T], options: Optional[RetryOptions] = None, *, name: str = "operation", **policy_kwargs) -> T:
    """Run ``operation`` once under a throwaway RetryPolicy."""
    return RetryPolicy(options, **policy_kwargs).run(operation, name=name)
