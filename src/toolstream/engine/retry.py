"""Bounded retry for outbound sends.

Only `TransientTransportError` is retried. Exhaustion, and every other failure,
is raised as `DeliveryError` so the session can render it and release the
waiting flag. Tool handlers are never wrapped here; a handler's own result
already carries its error state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from toolstream.config import DEFAULT_RETRY_DELAY_S, DEFAULT_SEND_RETRIES, EngineConfig
from toolstream.errors import DeliveryError, TransientTransportError, TransportError
from toolstream.log_utils import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]

UNAVAILABLE_MESSAGE = "The server is temporarily unavailable. Please try again later."


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_SEND_RETRIES
    delay_s: float = DEFAULT_RETRY_DELAY_S

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RetryPolicy":
        return cls(max_retries=config.send_retries, delay_s=config.retry_delay_s)


class RetryController:
    """Runs an async operation under a `RetryPolicy`."""

    def __init__(self, policy: RetryPolicy | None = None, *, sleep: Sleep | None = None) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

    async def backoff(self) -> None:
        if self.policy.delay_s > 0:
            await self._sleep(self.policy.delay_s)

    async def run(self, operation: Callable[[], Awaitable[T]], *, action: str = "send") -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except TransientTransportError as exc:
                if attempt >= self.policy.max_attempts:
                    log_event(
                        logger,
                        "retry.exhausted",
                        level=logging.WARNING,
                        action=action,
                        attempts=attempt,
                        status=exc.status,
                    )
                    raise DeliveryError(UNAVAILABLE_MESSAGE, status=exc.status, attempts=attempt) from exc
                log_event(
                    logger,
                    "retry.transient",
                    action=action,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    status=exc.status,
                    delay_s=self.policy.delay_s,
                )
                await self.backoff()
            except TransportError as exc:
                log_event(logger, "retry.failed", level=logging.WARNING, action=action, status=exc.status, error=str(exc))
                raise DeliveryError(str(exc), status=exc.status, attempts=attempt) from exc
            except Exception as exc:
                log_event(logger, "retry.failed", level=logging.WARNING, action=action, error=repr(exc))
                raise DeliveryError(f"{action} failed: {exc}", attempts=attempt) from exc


__all__ = ["RetryController", "RetryPolicy", "Sleep", "UNAVAILABLE_MESSAGE"]
