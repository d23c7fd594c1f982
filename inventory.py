"""Stock ledger for limited items, keyed by Stripe Price ID.

Checkout reserves quantities while the Stripe session is pending, the webhook
finalizes them into ``sold`` once payment is confirmed, and expired
reservations are purged lazily whenever the ledger is opened.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from storage import DocumentStore

logger = logging.getLogger(__name__)

LEDGER_KEY = "inventory"
DEFAULT_TTL_SECONDS = 7200
MIN_TTL_SECONDS = 60


class OutOfStock(Exception):
    def __init__(self, price_id: str, label: str, available: int, requested: int) -> None:
        super().__init__(f"{label}: {available} available, {requested} requested")
        self.price_id = price_id
        self.label = label
        self.available = available
        self.requested = requested

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error": "Rupture de stock",
            "price_id": self.price_id,
            "label": self.label,
            "available": self.available,
            "requested": self.requested,
        }


@dataclass(frozen=True)
class ReservationResult:
    reservation_id: str
    existing: bool = False
    skipped: bool = False
    items: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class FinalizeResult:
    ok: bool
    finalized: bool = False
    empty: bool = False
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if self.finalized:
            out["finalized"] = True
        if self.empty:
            out["empty"] = True
        if self.error:
            out["error"] = self.error
        return out


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(value))
    except Exception:
        return None


class InventoryLedger:
    def __init__(
        self,
        store: DocumentStore,
        default_items: Optional[Mapping[str, Mapping[str, Any]]] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        key: str = LEDGER_KEY,
    ) -> None:
        self.store = store
        self.default_items = dict(default_items or {})
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.key = key

    # -------------------------
    # Document helpers (operate on an already opened ledger)
    # -------------------------
    def _now(self) -> int:
        return int(self.clock())

    def _prepare(self, inv: Dict[str, Any]) -> Dict[str, Any]:
        for section in ("items", "sold", "reservations"):
            if not isinstance(inv.get(section), dict):
                inv[section] = {}

        for price_id, row in self.default_items.items():
            if not price_id:
                continue
            item = inv["items"].get(price_id)
            if not isinstance(item, dict):
                item = inv["items"][price_id] = {}
            if "label" not in item and row.get("label") is not None:
                item["label"] = str(row["label"])
            if "stock" not in item and row.get("stock") is not None:
                item["stock"] = int(row["stock"])
            inv["sold"].setdefault(price_id, 0)

        self._release_expired(inv)
        return inv

    def _release_expired(self, inv: Dict[str, Any]) -> None:
        now = self._now()
        for rid in list(inv["reservations"].keys()):
            row = inv["reservations"][rid]
            expires = _as_int(row.get("expires_at")) if isinstance(row, dict) else None
            if expires is None or expires <= 0 or expires < now:
                del inv["reservations"][rid]

    @staticmethod
    def _reserved_qty(inv: Dict[str, Any], price_id: str) -> int:
        total = 0
        for row in inv["reservations"].values():
            items = row.get("items") if isinstance(row, dict) else None
            if not isinstance(items, dict):
                continue
            qty = _as_int(items.get(price_id, 0)) or 0
            if qty > 0:
                total += qty
        return total

    def _available(self, inv: Dict[str, Any], price_id: str) -> Optional[int]:
        item = inv["items"].get(price_id)
        if not isinstance(item, dict):
            return None
        stock = _as_int(item.get("stock"))
        if stock is None or stock < 0:
            return None
        sold = max(0, _as_int(inv["sold"].get(price_id, 0)) or 0)
        avail = stock - sold - self._reserved_qty(inv, price_id)
        return max(0, avail)

    def _mutate(self, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        def _apply(doc: Dict[str, Any]) -> Any:
            inv = self._prepare(doc)
            result = fn(inv)
            inv["updated_at"] = datetime.now(timezone.utc).isoformat(timespec="seconds")
            return result

        return self.store.mutate(self.key, _apply, default=dict)

    # -------------------------
    # Public API
    # -------------------------
    def snapshot(self) -> Dict[str, Any]:
        doc = self.store.get(self.key, {})
        if not isinstance(doc, dict):
            doc = {}
        return self._prepare(doc)

    def available(self, price_id: str) -> Optional[int]:
        return self._available(self.snapshot(), price_id)

    def reserve(
        self,
        reservation_id: str,
        items: Mapping[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> ReservationResult:
        rid = str(reservation_id or "").strip()
        if not rid:
            raise ValueError("Missing reservation id")
        ttl = max(MIN_TTL_SECONDS, int(ttl_seconds if ttl_seconds is not None else self.ttl_seconds))

        def _reserve(inv: Dict[str, Any]) -> ReservationResult:
            existing = inv["reservations"].get(rid)
            if isinstance(existing, dict):
                return ReservationResult(
                    reservation_id=rid,
                    existing=True,
                    items=dict(existing.get("items") or {}),
                )

            needs: Dict[str, int] = {}
            for price_id, qty in items.items():
                if not isinstance(price_id, str) or not price_id.strip():
                    continue
                q = _as_int(qty) or 0
                if q < 1:
                    continue
                avail = self._available(inv, price_id)
                if avail is None:
                    continue
                if avail < q:
                    label = str(inv["items"][price_id].get("label") or price_id)
                    raise OutOfStock(price_id, label, avail, q)
                needs[price_id] = q

            if not needs:
                return ReservationResult(reservation_id=rid, skipped=True)

            now = self._now()
            inv["reservations"][rid] = {
                "created_at": now,
                "expires_at": now + ttl,
                "items": needs,
            }
            return ReservationResult(reservation_id=rid, items=needs)

        result = self._mutate(_reserve)
        if not result.skipped and not result.existing:
            logger.info("Reserved %s for %s", result.items, rid)
        return result

    def finalize(self, reservation_id: str) -> FinalizeResult:
        rid = str(reservation_id or "").strip()
        if not rid:
            return FinalizeResult(ok=False, error="Missing reservation id")

        def _finalize(inv: Dict[str, Any]) -> FinalizeResult:
            row = inv["reservations"].get(rid)
            if not isinstance(row, dict):
                return FinalizeResult(ok=False, error="Reservation not found")

            items = row.get("items")
            if not isinstance(items, dict):
                del inv["reservations"][rid]
                return FinalizeResult(ok=True, finalized=True, empty=True)

            for price_id, qty in items.items():
                q = _as_int(qty) or 0
                if not price_id or q < 1:
                    continue
                current = max(0, _as_int(inv["sold"].get(price_id, 0)) or 0)
                inv["sold"][price_id] = current + q

            del inv["reservations"][rid]
            return FinalizeResult(ok=True, finalized=True)

        result = self._mutate(_finalize)
        if result.ok:
            logger.info("Finalized reservation %s", rid)
        else:
            logger.warning("Finalize %s: %s", rid, result.error)
        return result

    def cancel(self, reservation_id: str) -> bool:
        rid = str(reservation_id or "").strip()
        if not rid:
            return False

        def _cancel(inv: Dict[str, Any]) -> bool:
            return inv["reservations"].pop(rid, None) is not None

        removed = self._mutate(_cancel)
        if removed:
            logger.info("Cancelled reservation %s", rid)
        return removed

    def set_stock(self, price_id: str, stock: int, label: Optional[str] = None) -> None:
        if stock < 0:
            raise ValueError("Stock must be >= 0")

        def _set(inv: Dict[str, Any]) -> None:
            item = inv["items"].setdefault(price_id, {})
            item["stock"] = int(stock)
            if label is not None:
                item["label"] = label
            inv["sold"].setdefault(price_id, 0)

        self._mutate(_set)
