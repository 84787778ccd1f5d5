import sys
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import requests

# (labels, [timestamp_ns, line])
Entry = Tuple[Tuple[Tuple[str, str], ...], List[str]]


class LokiHandler(logging.Handler):
    """
    Ships supervisor log records to Grafana Loki.

    Records are buffered and pushed by a background thread every
    flush_interval seconds, or right away once batch_size records are
    waiting. Entries sharing the same labels go out as one Loki stream.
    While Loki is unreachable the buffer holds at most max_buffer records;
    the oldest are dropped first and counted in `dropped`.
    """

    def __init__(self, url: str, container_id: str, org_id: Optional[str] = None,
                 flush_interval: float = 10, batch_size: int = 100, max_buffer: int = 10000):
        """
        :param url: The base URL of the Loki instance.
        :param container_id: Host/container identifier attached to every stream.
        :param org_id: The tenant ID for Loki (sent as 'X-Scope-OrgID').
        :param flush_interval: Seconds between background pushes.
        :param batch_size: Buffered records that trigger an immediate push.
        :param max_buffer: Upper bound on buffered records.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.container_id = container_id
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.dropped = 0

        self.session = requests.Session()
        self.session.headers["Content-Type"] = "application/json"
        if org_id:
            self.session.headers["X-Scope-OrgID"] = org_id

        self.log_buffer: Deque[Entry] = deque(maxlen=max_buffer)
        self.buffer_lock = threading.Lock()
        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._flush_loop, name="LokiFlushThread", daemon=True)
        self.flush_thread.start()

    def _flush_loop(self) -> None:
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def labels_for(self, record: logging.LogRecord) -> Dict[str, str]:
        return {
            "job": "nodefleet",
            "container": self.container_id,
            "level": record.levelname.lower(),
            "logger": record.name,
        }

    def emit(self, record: logging.LogRecord) -> None:
        try:
            labels = tuple(sorted(self.labels_for(record).items()))
            entry = (labels, [str(int(record.created * 1e9)), self.format(record)])
            with self.buffer_lock:
                if len(self.log_buffer) == self.log_buffer.maxlen:
                    self.dropped += 1
                self.log_buffer.append(entry)
                full = len(self.log_buffer) >= self.batch_size
            if full:
                self.flush()
        except Exception:
            self.handleError(record)

    def _take_batch(self) -> List[Entry]:
        with self.buffer_lock:
            batch = list(self.log_buffer)
            self.log_buffer.clear()
        return batch

    @staticmethod
    def group_streams(batch: List[Entry]) -> List[Dict[str, Any]]:
        """Builds the push payload's 'streams' list: one stream per label set, values in arrival order."""
        streams: Dict[tuple, List[List[str]]] = {}
        for labels, value in batch:
            streams.setdefault(labels, []).append(value)
        return [{"stream": dict(labels), "values": values} for labels, values in streams.items()]

    def _push(self, streams: List[Dict[str, Any]], count: int) -> None:
        # Errors go to stderr: this handler sits on the root logger.
        try:
            response = self.session.post(self.url, json={"streams": streams}, timeout=5)
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {count} logs to Loki: {e}", file=sys.stderr)
            return
        if response.status_code != 204:
            print(f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}", file=sys.stderr)

    def flush(self) -> None:
        """Pushes everything buffered so far. The network call happens outside the buffer lock."""
        batch = self._take_batch()
        if batch:
            self._push(self.group_streams(batch), len(batch))

    def close(self) -> None:
        """Stops the flush thread after a final push."""
        self.stop_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        self.session.close()
        super().close()
