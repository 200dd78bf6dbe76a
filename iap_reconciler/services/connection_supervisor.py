"""Connection supervisor for the billing service.

Responsibilities:
- Request connections and route connection-state callbacks
- Reconnect after a disconnect with bounded exponential backoff
- Run tasks once the connection is up ("ensure connected, then run")

The retry policy only ever adds attempts on top of externally triggered
connects; it never blocks them. Exhausting it is silent: the next external
trigger (app start, user action) connects again.
"""

import threading
from typing import Any, Callable, List, Optional

from iap_reconciler.clients.billing_client import (
    BillingClient,
    BillingResponse,
    ConnectionListener,
)
from iap_reconciler.logging_config import get_logger

logger = get_logger(__name__)

Task = Callable[[], None]
Scheduler = Callable[[float, Task], Any]


def timer_scheduler(delay_seconds: float, fn: Task) -> threading.Timer:
    """Run ``fn`` on a daemon timer thread after ``delay_seconds``."""
    timer = threading.Timer(delay_seconds, fn)
    timer.daemon = True
    timer.start()
    return timer


class RetryState:
    """Attempt counter, starting at 1. Thread-safe."""

    def __init__(self) -> None:
        self._attempt = 1
        self._lock = threading.Lock()

    @property
    def attempt(self) -> int:
        with self._lock:
            return self._attempt

    def get_and_increment(self) -> int:
        with self._lock:
            attempt = self._attempt
            self._attempt += 1
            return attempt

    def reset(self) -> None:
        with self._lock:
            self._attempt = 1


class _PendingTask:
    """A queued task that may run at most once."""

    def __init__(self, task: Task):
        self.task = task
        self._claimed = False
        self._lock = threading.Lock()

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True


class ConnectionSupervisor:
    """Owns the connection lifecycle of one billing client.

    Args:
        billing_client: Client to supervise
        max_retry: Attempt cap; no reconnect is scheduled once attempt >= max_retry
        base_delay_millis: Backoff base; attempt n waits base * 2**n
        task_delay_millis: Fallback wait before a queued task runs anyway
        scheduler: ``scheduler(delay_seconds, fn)``; defaults to daemon timers
    """

    def __init__(
        self,
        billing_client: BillingClient,
        max_retry: int = 5,
        base_delay_millis: int = 500,
        task_delay_millis: int = 2000,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._client = billing_client
        self._max_retry = max_retry
        self._base_delay_millis = base_delay_millis
        self._task_delay_millis = task_delay_millis
        self._scheduler = scheduler or timer_scheduler

        self._retry = RetryState()
        self._lock = threading.Lock()
        self._pending: List[_PendingTask] = []
        self._timers: List[Any] = []
        self._connection_hooks: List[Task] = []
        self._closed = False

        self.listener = ConnectionListener(
            on_setup_finished=self._on_setup_finished,
            on_disconnected=self.on_connection_lost,
        )

    @property
    def retry_state(self) -> RetryState:
        return self._retry

    def add_connection_hook(self, hook: Task) -> None:
        """Register a callable to run every time the connection is established."""
        with self._lock:
            self._connection_hooks.append(hook)

    def _schedule(self, delay_millis: int, fn: Task) -> None:
        handle = self._scheduler(delay_millis / 1000.0, fn)
        with self._lock:
            if handle is not None and hasattr(handle, "cancel"):
                self._timers = [t for t in self._timers if getattr(t, "is_alive", lambda: True)()]
                self._timers.append(handle)

    def connect(self) -> bool:
        """Request a connection if the client is not ready.

        Returns:
            True if a connection was requested
        """
        with self._lock:
            if self._closed:
                return False
        if self._client.is_ready():
            return False
        logger.debug("billing_connection_requested")
        self._client.start_connection(self.listener)
        return True

    def ensure_connected_then(self, task: Task) -> None:
        """Run ``task`` now if connected, otherwise once the connection is up.

        A queued task runs exactly once: on the connection-established event,
        or after ``task_delay_millis`` if that event has not arrived by then.
        """
        if self._client.is_ready():
            task()
            return

        pending = _PendingTask(task)
        with self._lock:
            self._pending.append(pending)

        logger.debug("billing_not_ready_task_queued", task_delay_millis=self._task_delay_millis)
        self._schedule(self._task_delay_millis, lambda: self._run_pending(pending, "grace_timeout"))
        self.connect()

    def _run_pending(self, pending: _PendingTask, trigger: str) -> None:
        if not pending.claim():
            return
        with self._lock:
            if pending in self._pending:
                self._pending.remove(pending)
            closed = self._closed
        if closed:
            return
        if trigger == "grace_timeout":
            logger.info("queued_task_running_without_connection", trigger=trigger)
        try:
            pending.task()
        except Exception as e:
            logger.error(
                "queued_task_failed",
                trigger=trigger,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def _on_setup_finished(self, response: BillingResponse) -> None:
        if response == BillingResponse.OK:
            logger.info("billing_setup_finished", response=response.name)
            self.on_connection_established()
        elif response == BillingResponse.BILLING_UNAVAILABLE:
            logger.info("billing_unavailable_on_device", response=response.name)
        else:
            logger.warning("billing_setup_failed", response=response.name)
            self.connection_retry_policy(self.connect)

    def on_connection_established(self) -> None:
        """Reset the retry counter, run queued tasks, then connection hooks."""
        self._retry.reset()
        with self._lock:
            pending = list(self._pending)
            hooks = list(self._connection_hooks)

        for item in pending:
            self._run_pending(item, "connection_established")

        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logger.error(
                    "connection_hook_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def on_connection_lost(self) -> None:
        """Schedule a reconnect through the retry policy."""
        logger.warning("billing_service_disconnected", attempt=self._retry.attempt)
        self.connection_retry_policy(self.connect)

    def connection_retry_policy(self, block: Task) -> bool:
        """Schedule ``block`` with exponential backoff unless the cap is reached.

        Returns:
            True if a retry was scheduled
        """
        with self._lock:
            if self._closed:
                return False
        attempt = self._retry.get_and_increment()
        if attempt >= self._max_retry:
            logger.info("connection_retry_exhausted", attempt=attempt, max_retry=self._max_retry)
            return False

        wait_millis = (2 ** attempt) * self._base_delay_millis
        logger.info("connection_retry_scheduled", attempt=attempt, wait_millis=wait_millis)
        self._schedule(wait_millis, block)
        return True

    def shutdown(self) -> None:
        """Cancel outstanding timers and drop queued tasks."""
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
            dropped = len(self._pending)
            self._pending.clear()
        for timer in timers:
            timer.cancel()
        logger.info("connection_supervisor_shutdown", dropped_tasks=dropped)
