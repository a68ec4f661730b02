"""Request accounting for routed chat completions.

Every forwarded request is appended to a daily JSONL audit log (when a
metrics directory is configured) and folded into in-memory Prometheus
counters that ``GET /metrics`` renders in the text exposition format.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any, Optional

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class _PromMetrics:
    __slots__ = ("_lock", "_counter", "_histogram")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str, str], int] = defaultdict(int)
        self._histogram: defaultdict[str, dict[str, Any]] = defaultdict(_new_histogram_state)

    def record(self, payload: dict[str, Any]) -> None:
        endpoint = str(payload.get("endpoint") or "unknown")
        model = str(payload.get("model") or "unknown")
        status = str(payload.get("status") or "0")
        latency_seconds = max(float(payload.get("latency_ms") or 0.0) / 1000.0, 0.0)

        with self._lock:
            self._counter[(endpoint, model, status)] += 1
            hist_state = self._histogram[endpoint]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds

    def render(self) -> str:
        with self._lock:
            lines: list[str] = [
                "# HELP gateway_requests_total Chat completions routed per endpoint",
                "# TYPE gateway_requests_total counter",
            ]
            for (endpoint, model, status), value in sorted(self._counter.items()):
                lines.append(
                    f'gateway_requests_total{{endpoint="{endpoint}",model="{model}",status="{status}"}} {value}'
                )
            lines.append("# HELP gateway_upstream_latency_seconds Time until upstream response headers")
            lines.append("# TYPE gateway_upstream_latency_seconds histogram")
            for endpoint, state in sorted(self._histogram.items()):
                buckets = state["buckets"]
                for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                    le_value = format(bound, ".6g")
                    lines.append(
                        f'gateway_upstream_latency_seconds_bucket{{endpoint="{endpoint}",le="{le_value}"}} {buckets[idx]}'
                    )
                lines.append(
                    f'gateway_upstream_latency_seconds_bucket{{endpoint="{endpoint}",le="+Inf"}} {buckets[-1]}'
                )
                lines.append(
                    f'gateway_upstream_latency_seconds_count{{endpoint="{endpoint}"}} {state["count"]}'
                )
                lines.append(
                    f'gateway_upstream_latency_seconds_sum{{endpoint="{endpoint}"}} {state["sum"]}'
                )
        return "\n".join(lines) + "\n"


class MetricsLogger:
    def __init__(self, dirpath: str | None = None):
        self.dir = dirpath
        if self.dir:
            os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._prom = _PromMetrics()

    def _file(self) -> str | None:
        if not self.dir:
            return None
        return os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        path = self._file()
        if path is not None:
            if self._lock is None:
                self._lock = asyncio.Lock()
            async with self._lock:
                with open(path, "a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._prom.record(record)

    def render_prometheus(self) -> bytes:
        return self._prom.render().encode("utf-8")
