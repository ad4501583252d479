from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.copilot.config import settings
from src.copilot.errors import CopilotError, StorageError, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Injectable retry behaviour built on tenacity.

    ``max_attempts`` counts the first call, so ``max_attempts=3`` means at most
    two retries. Delays double from ``backoff_seconds`` up to
    ``max_backoff_seconds``. Tests pass a recording ``sleep`` to avoid
    wall-clock waits.
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    sleep: Callable[[float], None] = time.sleep

    def retrying(self, retry_if: Callable[[BaseException], bool], description: str) -> Retrying:
        def _log_retry(state: RetryCallState) -> None:
            logger.warning(
                "Retrying %s after attempt %s/%s failed (%s); sleeping %.2fs",
                description,
                state.attempt_number,
                self.max_attempts,
                state.outcome.exception() if state.outcome else None,
                state.next_action.sleep if state.next_action else 0.0,
            )

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            retry=retry_if_exception(retry_if),
            sleep=self.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    def run(
        self,
        operation: Callable[[], T],
        *,
        retry_if: Callable[[BaseException], bool],
        description: Optional[str] = None,
    ) -> T:
        name = description or getattr(operation, "__name__", "operation")
        return self.retrying(retry_if, name)(operation)


def storage_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.storage_max_attempts,
        backoff_seconds=settings.storage_backoff_seconds,
    )


def call_storage(policy: RetryPolicy, operation: Callable[[], T], description: str) -> T:
    """Run a repository call, retrying transient failures.

    Exhausted transient failures and unexpected exceptions surface as
    StorageError; other domain errors (conflicts, not found) pass through.
    """

    try:
        return policy.run(
            operation,
            retry_if=lambda exc: isinstance(exc, TransientStorageError),
            description=description,
        )
    except TransientStorageError as exc:
        error = StorageError(f"Storage unavailable during {description}")
        logger.error("%s: retries exhausted: %s", error, exc)
        raise error from exc
    except CopilotError:
        raise
    except Exception as exc:
        error = StorageError(f"Storage failure during {description}")
        logger.exception("%s", error)
        raise error from exc
