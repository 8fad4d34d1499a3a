from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class StockMovementJournal:
    """Append-only JSONL record of every stock deduction, restock and rollback."""

    def __init__(self, file_path: str | Path = "logs/stock_movements.jsonl") -> None:
        self._path = Path(file_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def record(self, payload: dict[str, Any]) -> None:
        event = {
            "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        line = json.dumps(event, ensure_ascii=True, default=str) + "\n"
        with self._lock, self._path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    def list_movements(
        self,
        *,
        item_id: str | None = None,
        movement: str | None = None,
    ) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        items: list[dict[str, Any]] = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            event = json.loads(line)
            if item_id and event.get("item_id") != item_id:
                continue
            if movement and event.get("movement") != movement:
                continue
            items.append(event)
        return items
