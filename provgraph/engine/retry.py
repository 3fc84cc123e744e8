"""
Bounded exponential backoff for retryable provider errors.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple

from provgraph.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def call(
        self,
        fn: Callable[[], Any],
        label: str = "",
        sleep: Callable[[float], None] = time.sleep,
    ) -> Tuple[Any, int]:
        """
        Call ``fn`` until it succeeds or fails for good.

        Returns ``(result, attempts)``. A non-retryable ProviderError is raised
        immediately; a retryable one is raised as non-retryable once
        ``max_attempts`` is reached. ``attempts`` is set on the raised error.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(), attempt
            except ProviderError as exc:
                if not exc.retryable:
                    exc.attempts = attempt
                    raise
                if attempt >= self.max_attempts:
                    final = ProviderError(
                        f"{exc.message} (gave up after {attempt} attempts)", retryable=False
                    )
                    final.attempts = attempt
                    raise final from exc
                wait = self.delay(attempt)
                logger.warning(
                    "%s: attempt %d/%d failed (%s), retrying in %.2fs",
                    label, attempt, self.max_attempts, exc.message, wait,
                )
                sleep(wait)
