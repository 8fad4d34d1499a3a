from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class MetricsCollector:
    counters: Counter[str] = field(default_factory=Counter)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self.counters)
        return {
            "documents_created_total": counters.get("documents_created_total", 0),
            "documents_updated_total": counters.get("documents_updated_total", 0),
            "transitions_total": counters.get("transitions_total", 0),
            "transitions_rejected_total": counters.get("transitions_rejected_total", 0),
            "conversions_total": counters.get("conversions_total", 0),
            "stock_deductions_total": counters.get("stock_deductions_total", 0),
            "stock_rejections_total": counters.get("stock_rejections_total", 0),
            "stock_cas_conflicts_total": counters.get("stock_cas_conflicts_total", 0),
            "ambiguous_matches_total": counters.get("ambiguous_matches_total", 0),
        }


class JsonlMetricsSink:
    def __init__(self, path: str | Path = "logs/metrics.jsonl") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: dict[str, Any]) -> None:
        payload = {
            "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
            **event,
        }
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, ensure_ascii=True) + "\n")

    def flush(self, collector: MetricsCollector, *, stage: str) -> None:
        for key, value in collector.snapshot().items():
            if value:
                self.emit({"metric": key, "value": value, "stage": stage})
