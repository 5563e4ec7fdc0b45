"""Telemetry sink: structured pipeline events as JSON lines.

Events: order_detected, order_filtered, order_copied, copy_failed,
cascade_cancel, exposure, connection_state, shutdown. Emission never raises;
a broken stream only costs the event.
"""
from __future__ import annotations

import json
import logging
import time
from collections import Counter
from typing import Any, Optional, TextIO

log = logging.getLogger(__name__)


class TelemetrySink:
    """Writes one JSON object per line to a stream (or nowhere).

    ``TelemetrySink()`` only counts events; ``TelemetrySink.to_file(path)``
    appends to a file.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream
        self._owns_stream = False
        self.counts: Counter[str] = Counter()

    @classmethod
    def to_file(cls, path: str) -> "TelemetrySink":
        sink = cls(open(path, "a", encoding="utf-8"))
        sink._owns_stream = True
        return sink

    def emit(self, event: str, **fields: Any) -> None:
        self.counts[event] += 1
        if self._stream is None:
            return
        try:
            record = {"ts": round(time.time(), 3), "event": event, **fields}
            self._stream.write(json.dumps(record, separators=(",", ":"), default=str) + "\n")
        except Exception:
            log.exception("telemetry emit error")

    def flush(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.flush()
        except Exception:
            log.exception("telemetry flush error")

    def close(self) -> None:
        self.flush()
        if self._owns_stream and self._stream is not None:
            self._stream.close()
        self._stream = None
