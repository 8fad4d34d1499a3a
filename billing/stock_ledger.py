"""Stock Ledger: the single point of mutation for inventory stock levels.

Every change is an optimistic compare-and-set through the inventory port,
retried a bounded number of times and serialized per item inside this
process. A batch is validated in full before the first write, and any
failure mid-batch restores the items already decremented.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Callable

from billing.errors import EngineError, InsufficientStockError, StockContentionError
from billing.matching import StockPlan, check_availability
from billing.metrics import MetricsCollector
from billing.movement_journal import StockMovementJournal
from billing.repository import InventoryRepository
from billing.retry_utils import STOCK_CAS_POLICY, RetryExhaustedError, RetryPolicy, run_with_retry
from schemas.document_schema import InventoryItem

logger = logging.getLogger(__name__)


class _StockConflict(RuntimeError):
    """Another writer changed stock_level between our read and our write."""


class KeyedLocks:
    """One lock per key, dropped once no thread holds or waits on it."""

    def __init__(self) -> None:
        # key -> [lock, threads holding or waiting]
        self._locks: dict[str, list] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class StockLedger:
    def __init__(
        self,
        inventory: InventoryRepository,
        *,
        retry_policy: RetryPolicy = STOCK_CAS_POLICY,
        journal: StockMovementJournal | None = None,
        metrics: MetricsCollector | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._inventory = inventory
        self._retry_policy = retry_policy
        self._journal = journal
        self._metrics = metrics
        self._sleep_fn = sleep_fn
        self._locks = KeyedLocks()

    def snapshot(self, plan: StockPlan) -> dict[str, InventoryItem]:
        return {item_id: self._inventory.get_item(item_id) for item_id in plan.draws}

    def deduct(self, plan: StockPlan, *, document_id: str | None = None) -> dict[str, int]:
        """Decrement every drawn item or none of them.

        Returns the resulting stock level per item.
        """
        if plan.is_empty:
            return {}
        applied: list[tuple[str, int]] = []
        levels: dict[str, int] = {}
        try:
            check_availability(plan, self.snapshot(plan))
            for item_id in sorted(plan.draws):
                quantity = plan.draws[item_id]
                if quantity <= 0:
                    continue
                levels[item_id] = self._apply(item_id, -quantity)
                applied.append((item_id, quantity))
                self._record("deduct", item_id, quantity, levels[item_id], document_id)
        except EngineError as exc:
            if isinstance(exc, InsufficientStockError) and self._metrics:
                self._metrics.increment("stock_rejections_total")
            self._rollback(applied, document_id)
            raise
        if self._metrics:
            self._metrics.increment("stock_deductions_total", len(applied))
        return levels

    def restock(
        self, plan: StockPlan, *, document_id: str | None = None, movement: str = "restock"
    ) -> dict[str, int]:
        levels: dict[str, int] = {}
        for item_id in sorted(plan.draws):
            quantity = plan.draws[item_id]
            if quantity <= 0:
                continue
            levels[item_id] = self._apply(item_id, quantity)
            self._record(movement, item_id, quantity, levels[item_id], document_id)
        return levels

    def _rollback(self, applied: list[tuple[str, int]], document_id: str | None) -> None:
        for item_id, quantity in reversed(applied):
            try:
                level = self._apply(item_id, quantity)
            except EngineError:
                # stock for this item stays short by `quantity` until corrected by hand
                logger.exception(
                    "Rollback failed to restore %d units of %s",
                    quantity,
                    item_id,
                    extra={"inventory_item_id": item_id, "quantity": quantity, "outcome": "rollback_failed"},
                )
                continue
            self._record("rollback", item_id, quantity, level, document_id)

    def _apply(self, item_id: str, delta: int) -> int:
        def _attempt() -> int:
            current = self._inventory.get_item(item_id)
            new_level = current.stock_level + delta
            if new_level < 0:
                raise InsufficientStockError(
                    current.name, current.stock_level, -delta, item_id=item_id
                )
            if not self._inventory.compare_and_set_stock(item_id, current.stock_level, new_level):
                if self._metrics:
                    self._metrics.increment("stock_cas_conflicts_total")
                raise _StockConflict(item_id)
            return new_level

        with self._locks.hold(item_id):
            try:
                return run_with_retry(
                    _attempt,
                    should_retry=lambda exc: isinstance(exc, _StockConflict),
                    policy=self._retry_policy,
                    sleep_fn=self._sleep_fn,
                )
            except RetryExhaustedError as exc:
                raise StockContentionError(item_id, exc.attempts) from exc

    def _record(
        self, movement: str, item_id: str, quantity: int, level: int, document_id: str | None
    ) -> None:
        logger.info(
            "Stock %s of %d for %s (now %d)",
            movement,
            quantity,
            item_id,
            level,
            extra={"inventory_item_id": item_id, "quantity": quantity, "stage": "stock", "outcome": movement},
        )
        if self._journal is not None:
            self._journal.record(
                {
                    "movement": movement,
                    "item_id": item_id,
                    "quantity": quantity,
                    "stock_after": level,
                    "document_id": document_id,
                }
            )
