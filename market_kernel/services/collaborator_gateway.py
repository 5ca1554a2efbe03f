"""
CollaboratorGateway -- bounded, timed calls into external collaborators.

Responsibility:
    Runs every call to the party directory, the notification channels and
    the payment processor on a bounded worker pool and waits for it with a
    deadline.  Idempotent reads get a fixed number of automatic retries;
    writes (payout issuance) get none: a retry of a write must be an
    explicit caller decision, deduplicated by idempotency key.

Architecture position:
    Kernel > Services -- imperative shell around the collaborator ports in
    domain/collaborators.py.

Failure modes:
    - CollaboratorTimeoutError when a call does not finish within
      ``timeout_seconds``.  The worker thread is left to finish on its own;
      its result is discarded.
    - Any exception raised by the collaborator itself propagates unchanged
      (after the read retries are exhausted).
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from market_kernel.exceptions import CollaboratorTimeoutError
from market_kernel.logging_config import get_logger

logger = get_logger("services.collaborator_gateway")

T = TypeVar("T")


class CollaboratorGateway:
    """
    Timeout and retry policy for external calls.

    Contract:
        ``call_read`` is for idempotent lookups: 1 + read_retries attempts.
        ``call_write`` is for side-effecting calls: exactly one attempt.
    """

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        read_retries: int = 1,
        max_workers: int = 8,
        thread_name_prefix: str = "collaborator",
    ):
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        if read_retries < 0:
            raise ValueError(f"read_retries must be >= 0, got {read_retries}")
        self.timeout_seconds = timeout_seconds
        self.read_retries = read_retries
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )

    def call_read(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempts = 1 + self.read_retries
        for attempt in range(1, attempts + 1):
            try:
                return self._call(operation, fn, *args, **kwargs)
            except Exception as exc:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "collaborator_read_retry",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "error": f"{type(exc).__name__}: {exc}",
                    },
                )
        raise AssertionError("unreachable")  # pragma: no cover

    def call_write(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self._call(operation, fn, *args, **kwargs)

    def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "collaborator_timeout",
                extra={"operation": operation, "timeout_seconds": self.timeout_seconds},
            )
            raise CollaboratorTimeoutError(operation, self.timeout_seconds) from None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
