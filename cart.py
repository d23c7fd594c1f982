from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

from shipping import METHOD_HOME, ShippingPolicy

SESSION_KEY = "cart"
MAX_LINES = 50


@dataclass(frozen=True)
class CartLine:
    name: str
    format: str                 # size label ("Deux") or format ("30 ml")
    price: float                # unit price, major units
    price_id: str = ""
    added_at: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["CartLine"]:
        if not isinstance(raw, Mapping):
            return None
        name = str(raw.get("name") or "").strip()
        if not name:
            return None
        try:
            price = float(raw.get("price") or 0)
        except Exception:
            return None
        if price < 0:
            return None
        try:
            added_at = int(raw.get("added_at") or raw.get("timestamp") or 0)
        except Exception:
            added_at = 0
        return cls(
            name=name,
            format=str(raw.get("format") or raw.get("size") or "").strip(),
            price=price,
            price_id=str(raw.get("price_id") or raw.get("stripePriceId") or "").strip(),
            added_at=added_at,
        )

    def price_cents(self) -> int:
        return int(round(self.price * 100))


@dataclass
class Cart:
    """Ordered cart lines for one visitor; loaded from and saved to the session."""

    lines: List[CartLine] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: Mapping[str, Any]) -> "Cart":
        raw = session.get(SESSION_KEY)
        if not isinstance(raw, list):
            return cls()
        lines = [ln for ln in (CartLine.from_dict(r) for r in raw) if ln is not None]
        return cls(lines=lines[:MAX_LINES])

    def to_session(self, session: MutableMapping[str, Any]) -> None:
        session[SESSION_KEY] = [asdict(ln) for ln in self.lines]

    def add(self, line: CartLine) -> CartLine:
        if len(self.lines) >= MAX_LINES:
            raise ValueError("Cart is full")
        if not line.added_at:
            line = CartLine(line.name, line.format, line.price, line.price_id, int(time.time()))
        self.lines.append(line)
        return line

    def remove(self, index: int) -> CartLine:
        if index < 0 or index >= len(self.lines):
            raise IndexError("No such cart line")
        return self.lines.pop(index)

    def clear(self) -> None:
        self.lines = []

    @property
    def count(self) -> int:
        return len(self.lines)

    def subtotal(self) -> float:
        return sum(ln.price for ln in self.lines)

    def subtotal_cents(self) -> int:
        return sum(ln.price_cents() for ln in self.lines)

    def checkout_items(self, aliases: Optional[Mapping[str, str]] = None) -> List[Dict[str, Any]]:
        """Group purchasable lines by price id into ``[{price, quantity}]``.

        Lines without a price id cannot be bought online and are left out.
        """
        aliases = aliases or {}
        counts: Dict[str, int] = {}
        for ln in self.lines:
            if not ln.price_id:
                continue
            pid = aliases.get(ln.price_id, ln.price_id)
            counts[pid] = counts.get(pid, 0) + 1
        return [{"price": pid, "quantity": qty} for pid, qty in counts.items()]

    def summary(
        self,
        policy: ShippingPolicy,
        country: Optional[str] = None,
        method: str = METHOD_HOME,
        aliases: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        subtotal_cents = self.subtotal_cents()
        if not self.lines:
            return {
                "count": 0,
                "subtotal_cents": 0,
                "shipping": None,
                "total_cents": 0,
            }
        weight = policy.weight_of(self.checkout_items(aliases))
        quote = policy.quote(weight, country, method, subtotal_cents)
        return {
            "count": self.count,
            "subtotal_cents": subtotal_cents,
            "shipping": quote.as_dict(),
            "total_cents": subtotal_cents + quote.amount_cents,
        }
