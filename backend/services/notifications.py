# backend/services/notifications.py
import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderStatusChanged:
    order_id: int
    order_number: str
    user_id: int
    old_status: str
    new_status: str
    actor_id: Optional[int] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class PaymentConfirmed:
    order_id: int
    order_number: str
    user_id: int
    reference: Optional[str] = None


def event_payload(event: Any) -> Dict[str, Any]:
    body = asdict(event) if is_dataclass(event) else dict(event)
    body["event"] = type(event).__name__
    return body


def log_sink(event: Any) -> None:
    logger.info("event %s", event_payload(event))


class WebhookSink:
    """POSTs each event as JSON to a configured URL.

    Delivery runs on a small worker pool so a slow endpoint never holds up the
    request that emitted the event. Failures are logged by the worker.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
        executor: Optional[Executor] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="webhook")
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()

    def __call__(self, event: Any) -> Future:
        future = self._executor.submit(self._post, event_payload(event))
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def _post(self, payload: Dict[str, Any]) -> None:
        try:
            if self._client is not None:
                self._client.post(self.url, json=payload, timeout=self.timeout).raise_for_status()
                return
            with httpx.Client(timeout=self.timeout) as client:
                client.post(self.url, json=payload).raise_for_status()
        except Exception as e:
            logger.warning("Webhook delivery to %s failed: %s", self.url, e)
            raise

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for deliveries already handed to the pool."""
        with self._pending_lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)


Sink = Callable[[Any], None]


class NotificationEmitter:
    """Fire-and-forget fan-out of domain events.

    A failing sink is logged and skipped; ``emit`` never raises, so callers can
    invoke it after committing without risking the committed change.
    """

    def __init__(self, sinks: Optional[List[Sink]] = None):
        self.sinks: List[Sink] = list(sinks) if sinks is not None else [log_sink]

    def emit(self, event: Any) -> None:
        for sink in self.sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("Notification sink %r failed for %s", sink, type(event).__name__)

    def emit_all(self, events) -> None:
        for event in events:
            self.emit(event)


def default_emitter() -> NotificationEmitter:
    sinks: List[Sink] = [log_sink]
    if settings.NOTIFY_WEBHOOK_URL:
        sinks.append(WebhookSink(settings.NOTIFY_WEBHOOK_URL))
    return NotificationEmitter(sinks)
