"""
Cancellable relay for streamed backend responses.

The upstream iterator runs on a producer thread that feeds a bounded
queue. The consumer waits on either the next fragment or a cancellation
signal, so a disconnect ends the relay promptly even while the backend
is still generating. Upstreams that expose close() are closed from the
consumer side on cancellation, which aborts a read the producer is
blocked in.
"""

import inspect
import logging
import queue
import threading
from typing import Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05
DEFAULT_MAX_BUFFERED = 64
DEFAULT_CLOSE_TIMEOUT = 2.0


class _Done:
    pass


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


_DONE = _Done()


class CancellableStream:
    """Relays text fragments until the upstream ends or cancel is set.

    Fragments produced upstream are recorded in `received` whether or not
    they were relayed, so partial output can be billed after cancellation.
    Once the relay has stopped nothing more is recorded, so `text` read
    after iteration is the final billable output.

    Args:
        upstream: Lazy, finite, non-restartable sequence of fragments,
            optionally with a thread-safe close()
        cancel: Set by the transport when the caller goes away
        poll_interval: Seconds between cancellation checks
        max_buffered: Fragments buffered ahead of the consumer
        close_timeout: Seconds to wait for the producer after closing the upstream
    """

    def __init__(
        self,
        upstream: Iterable[str],
        cancel: Optional[threading.Event] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_buffered: int = DEFAULT_MAX_BUFFERED,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
    ):
        self._upstream = upstream
        self._cancel = cancel or threading.Event()
        self._poll_interval = poll_interval
        self._max_buffered = max_buffered
        self._close_timeout = close_timeout
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.received: List[str] = []
        self.cancelled = False

    @property
    def text(self) -> str:
        """Everything the upstream produced before the relay stopped."""
        with self._lock:
            return "".join(self.received)

    def cancel(self) -> None:
        """Request the relay to stop."""
        self._cancel.set()

    def __iter__(self) -> Iterator[str]:
        if self._thread is not None:
            raise RuntimeError("CancellableStream can only be iterated once")

        buffer: "queue.Queue[object]" = queue.Queue(maxsize=self._max_buffered)
        self._thread = threading.Thread(
            target=self._produce, args=(buffer,), name="stream-relay", daemon=True
        )
        self._thread.start()

        try:
            while True:
                if self._cancel.is_set():
                    self.cancelled = True
                    logger.info("Stream cancelled after %d fragments", len(self.received))
                    return
                try:
                    item = buffer.get(timeout=self._poll_interval)
                except queue.Empty:
                    continue
                if item is _DONE:
                    return
                if isinstance(item, _Failure):
                    raise item.error
                yield item
        except GeneratorExit:
            self.cancelled = True
            raise
        finally:
            with self._lock:
                self._stop.set()
            self._release_upstream()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the producer thread to release the upstream."""
        if self._thread is not None:
            self._thread.join(timeout)

    def _release_upstream(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            return
        # A running generator can only be closed by the thread executing it
        if inspect.isgenerator(self._upstream):
            return
        close = getattr(self._upstream, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception:
            logger.warning("Closing the upstream stream failed", exc_info=True)
        self.join(self._close_timeout)
        if self._thread.is_alive():
            logger.warning("Upstream stream did not stop within %.1fs", self._close_timeout)

    def _produce(self, buffer: "queue.Queue[object]") -> None:
        iterator = iter(self._upstream)
        try:
            for fragment in iterator:
                if not fragment:
                    continue
                with self._lock:
                    if self._stop.is_set():
                        break
                    self.received.append(fragment)
                if not self._put(buffer, fragment):
                    break
            else:
                self._put(buffer, _DONE)
        except Exception as e:
            if self._stop.is_set():
                logger.debug("Upstream ended after relay stopped: %s", e)
            else:
                self._put(buffer, _Failure(e))
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def _put(self, buffer: "queue.Queue[object]", item: object) -> bool:
        while not self._stop.is_set():
            try:
                buffer.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False
