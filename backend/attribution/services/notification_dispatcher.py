import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from attribution.models import NoticeKind
from attribution.services.notification_store import NotificationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundNotice:
    kind: NoticeKind
    title: str
    body: str
    attribution_id: Optional[str] = None
    data: Dict[str, str] = field(default_factory=dict)


class NotificationDispatcher(ABC):
    """One-way send. Implementations never raise and never wait for delivery."""

    @abstractmethod
    def notify(self, recipient_id: str, notice: OutboundNotice) -> None: ...

    def flush(self, timeout: Optional[float] = None) -> bool:
        return True

    def close(self) -> None:
        return None


_STOP = object()


class QueueNotificationDispatcher(NotificationDispatcher):
    """Bounded outbound queue drained by a single daemon worker thread.

    Delivery is best-effort and at-most-once: a full queue drops the notice,
    a failed delivery is logged and forgotten.
    """

    def __init__(self, store: NotificationStore, maxsize: int = 1000):
        self.store = store
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._dropped = 0
        self._failed = 0
        self._counter_lock = threading.Lock()
        self._worker = threading.Thread(target=self._run, name="attribution_notifications", daemon=True)
        self._worker.start()

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def failed(self) -> int:
        return self._failed

    def notify(self, recipient_id: str, notice: OutboundNotice) -> None:
        try:
            self._queue.put_nowait((recipient_id, notice))
        except queue.Full:
            with self._counter_lock:
                self._dropped += 1
            logger.warning(
                "Notification queue full; dropped %s for recipient_id=%s attribution_id=%s",
                notice.kind,
                recipient_id,
                notice.attribution_id,
            )

    def _deliver(self, item: Tuple[str, OutboundNotice]) -> None:
        recipient_id, notice = item
        self.store.create(
            recipient_id=recipient_id,
            kind=notice.kind,
            title=notice.title,
            body=notice.body,
            attribution_id=notice.attribution_id,
            data=notice.data,
        )

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)  # type: ignore[arg-type]
            except Exception:
                with self._counter_lock:
                    self._failed += 1
                logger.exception("Notification delivery failed")
            finally:
                self._queue.task_done()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued notice has been handled. False on timeout."""
        if timeout is None:
            self._queue.join()
            return True
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, name="attribution_notifications_flush", daemon=True).start()
        return done.wait(timeout)

    def close(self) -> None:
        if not self._worker.is_alive():
            return
        self._queue.put(_STOP)
        self._worker.join(timeout=1.0)
