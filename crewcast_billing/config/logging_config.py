"""
Logging setup for the billing service.

Every record emitted while a webhook is being handled carries that event's
id and type, so a single Stripe delivery can be followed across modules.
Outside development the console prints one JSON object per line; records can
also be pushed to Grafana Loki when LOKI_ENABLED is set.
"""

import atexit
import json
import logging
import queue
import sys
import threading
from contextvars import ContextVar

import httpx

from crewcast_billing.config.config import Config

logger = logging.getLogger(__name__)

current_event_id: ContextVar[str | None] = ContextVar("current_event_id", default=None)
current_event_type: ContextVar[str | None] = ContextVar("current_event_type", default=None)

_CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "stripe")


class LokiLogHandler(logging.Handler):
    """
    Pushes formatted records to a Loki push endpoint.

    Records are queued by emit() and posted by a daemon thread, so a slow
    Loki never holds up a Stripe acknowledgement. When the queue is full the
    record is dropped.
    """

    def __init__(self, loki_url: str, tags: dict[str, str], max_queue_size: int = 10000):
        super().__init__()
        self.loki_url = loki_url
        self.tags = dict(tags)
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._http: httpx.Client | None = None
        self._stopping = threading.Event()
        self._thread = threading.Thread(target=self._worker, name="loki-push", daemon=True)
        self._thread.start()
        atexit.register(self.close)

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=httpx.Timeout(5.0, connect=2.0))
        return self._http

    def _worker(self) -> None:
        while not (self._stopping.is_set() and self._queue.empty()):
            try:
                payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._client().post(self.loki_url, json=payload).raise_for_status()
            except httpx.HTTPError:
                # Console output already has the line
                pass
            finally:
                self._queue.task_done()

    def _labels(self, record: logging.LogRecord) -> dict[str, str]:
        labels = {**self.tags, "level": record.levelname, "logger": record.name}
        event_type = getattr(record, "event_type", None)
        if event_type:
            labels["event_type"] = event_type
        if record.exc_info and record.exc_info[0] is not None:
            labels["error_type"] = record.exc_info[0].__name__
        return labels

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            stamp = str(int(record.created * 1e9))
            self._queue.put_nowait(
                {"streams": [{"stream": self._labels(record), "values": [[stamp, line]]}]}
            )
        except queue.Full:
            return
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self._stopping.set()
        if self._thread.is_alive():
            self._thread.join(timeout=5.0)
        if self._http is not None:
            self._http.close()
            self._http = None
        super().close()


class WebhookContextFilter(logging.Filter):
    """Copies the in-flight webhook event id and type onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, var in (("event_id", current_event_id), ("event_type", current_event_type)):
            value = var.get()
            if value:
                setattr(record, attr, value)
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in ("event_id", "event_type"):
            value = getattr(record, attr, None)
            if value is not None:
                entry[attr] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging() -> bool:
    """
    Install the console handler, and the Loki handler when enabled, on the root logger.

    Returns:
        bool: whether records are also being shipped to Loki
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(Config.LOG_LEVEL)

    correlation = WebhookContextFilter()

    console = logging.StreamHandler(sys.stdout)
    console.addFilter(correlation)
    console.setFormatter(
        logging.Formatter(_CONSOLE_FORMAT) if Config.IS_DEVELOPMENT else StructuredFormatter()
    )
    root.addHandler(console)

    shipping = False
    if Config.LOKI_ENABLED:
        try:
            loki = LokiLogHandler(
                loki_url=Config.LOKI_PUSH_URL,
                tags={"app": Config.SERVICE_NAME, "environment": Config.APP_ENV},
            )
        except (RuntimeError, ValueError) as e:
            logger.warning(f"Loki handler could not be started, console only: {e}")
        else:
            loki.addFilter(correlation)
            loki.setFormatter(StructuredFormatter())
            root.addHandler(loki)
            shipping = True
            logger.info(f"Shipping logs to Loki at {Config.LOKI_PUSH_URL}")

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return shipping
