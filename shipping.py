from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

METHOD_HOME = "home"
METHOD_RELAY = "mondial_relay"
SHIPPING_METHODS = (METHOD_HOME, METHOD_RELAY)


@dataclass(frozen=True)
class RateBracket:
    max_weight_grams: Optional[int]  # None = open-ended
    amount_cents: int


@dataclass(frozen=True)
class ShippingQuote:
    amount_cents: int
    raw_amount_cents: int
    free: bool
    table: str
    weight_grams: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "amount_cents": self.amount_cents,
            "raw_amount_cents": self.raw_amount_cents,
            "free": self.free,
            "table": self.table,
            "weight_grams": self.weight_grams,
        }


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except Exception:
        return None


def normalize_brackets(rows: Optional[Iterable[Any]]) -> List[RateBracket]:
    """Clean a configured rate table.

    Rows without a usable non-negative amount are dropped. A missing, zero,
    negative or non-numeric max weight makes the bracket open-ended. The result
    is sorted by max weight with open-ended brackets last.
    """
    out: List[RateBracket] = []
    for row in rows or []:
        if isinstance(row, RateBracket):
            out.append(row)
            continue
        if isinstance(row, Mapping):
            max_raw = row.get("max_weight_grams")
            amount_raw = row.get("amount_cents")
        elif isinstance(row, (list, tuple)) and len(row) == 2:
            max_raw, amount_raw = row
        else:
            continue

        amount = _to_int(amount_raw)
        if amount is None or amount < 0:
            continue

        max_w = _to_int(max_raw) if max_raw is not None else None
        if max_w is not None and max_w <= 0:
            max_w = None

        out.append(RateBracket(max_weight_grams=max_w, amount_cents=amount))

    out.sort(key=lambda b: (b.max_weight_grams is None, b.max_weight_grams or 0))
    return out


def resolve_bracket(weight_grams: int, brackets: Iterable[Any]) -> Optional[int]:
    """Price for ``weight_grams`` in a bracket table, or None for an empty table.

    The first bracket whose max is >= weight wins, so a weight sitting exactly
    on a boundary belongs to the lower bracket.
    """
    table = normalize_brackets(brackets)
    if not table:
        return None

    weight = max(0, int(weight_grams or 0))
    for b in table:
        if b.max_weight_grams is None:
            continue
        if weight <= b.max_weight_grams:
            return b.amount_cents

    for b in table:
        if b.max_weight_grams is None:
            return b.amount_cents
    return table[-1].amount_cents


def cart_weight_grams(
    items: Iterable[Mapping[str, Any]],
    weights_by_price_id: Optional[Mapping[str, Any]] = None,
    default_weight_grams: int = 0,
) -> int:
    weights = weights_by_price_id or {}
    default = max(0, _to_int(default_weight_grams) or 0)

    total = 0
    for li in items:
        price_id = li.get("price")
        if not isinstance(price_id, str) or not price_id:
            continue
        qty = _to_int(li.get("quantity", 1)) or 1
        if qty < 1:
            qty = 1
        w = _to_int(weights[price_id]) if price_id in weights else default
        if w is None or w < 0:
            w = 0
        total += w * qty
    return total


@dataclass(frozen=True)
class EuropeGroup:
    name: str
    countries: Tuple[str, ...]
    rates: Tuple[RateBracket, ...]


@dataclass
class ShippingPolicy:
    domestic_country: str = "FR"
    home_rates: List[RateBracket] = field(default_factory=list)
    relay_rates: List[RateBracket] = field(default_factory=list)
    europe_groups: List[EuropeGroup] = field(default_factory=list)
    free_threshold_cents: Optional[int] = None
    free_threshold_international_cents: Optional[int] = None
    weights_by_price_id: Dict[str, int] = field(default_factory=dict)
    default_weight_grams: int = 0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ShippingPolicy":
        groups: List[EuropeGroup] = []
        for idx, row in enumerate(config.get("EUROPE_SHIPPING_GROUPS") or []):
            if not isinstance(row, Mapping):
                continue
            countries = tuple(
                str(c).strip().upper() for c in (row.get("countries") or []) if str(c).strip()
            )
            if not countries:
                continue
            groups.append(
                EuropeGroup(
                    name=str(row.get("name") or f"europe-{idx + 1}"),
                    countries=countries,
                    rates=tuple(normalize_brackets(row.get("rates"))),
                )
            )

        weights: Dict[str, int] = {}
        for pid, w in (config.get("WEIGHTS_BY_PRICE_ID") or {}).items():
            w_int = _to_int(w)
            if w_int is not None:
                weights[str(pid)] = w_int

        return cls(
            domestic_country=str(config.get("DOMESTIC_COUNTRY") or "FR").upper(),
            home_rates=normalize_brackets(config.get("HOME_SHIPPING_RATES")),
            relay_rates=normalize_brackets(config.get("MONDIAL_RELAY_RATES")),
            europe_groups=groups,
            free_threshold_cents=_to_int(config.get("FREE_SHIPPING_THRESHOLD_CENTS")),
            free_threshold_international_cents=_to_int(
                config.get("FREE_SHIPPING_THRESHOLD_INTERNATIONAL_CENTS")
            ),
            weights_by_price_id=weights,
            default_weight_grams=_to_int(config.get("DEFAULT_WEIGHT_GRAMS")) or 0,
        )

    def is_domestic(self, country: Optional[str]) -> bool:
        return (country or self.domestic_country).strip().upper() == self.domestic_country

    def table_for(self, country: Optional[str], method: str) -> Tuple[str, List[RateBracket]]:
        cc = (country or self.domestic_country).strip().upper()
        if method == METHOD_RELAY:
            if cc != self.domestic_country:
                return "unconfigured", []
            return METHOD_RELAY, list(self.relay_rates)
        if cc == self.domestic_country:
            return METHOD_HOME, list(self.home_rates)
        for group in self.europe_groups:
            if cc in group.countries:
                return group.name, list(group.rates)
        return "unconfigured", []

    def threshold_for(self, country: Optional[str]) -> Optional[int]:
        if self.is_domestic(country):
            return self.free_threshold_cents
        return self.free_threshold_international_cents

    def weight_of(self, items: Iterable[Mapping[str, Any]]) -> int:
        return cart_weight_grams(items, self.weights_by_price_id, self.default_weight_grams)

    def quote(
        self,
        weight_grams: int,
        country: Optional[str] = None,
        method: str = METHOD_HOME,
        subtotal_cents: Optional[int] = None,
    ) -> ShippingQuote:
        table_name, table = self.table_for(country, method)
        raw = resolve_bracket(weight_grams, table)
        if raw is None:
            # Missing configuration must never block checkout.
            raw = 0
            table_name = "unconfigured"

        threshold = self.threshold_for(country)
        free = (
            threshold is not None
            and subtotal_cents is not None
            and subtotal_cents >= threshold
        )
        return ShippingQuote(
            amount_cents=0 if free else raw,
            raw_amount_cents=raw,
            free=bool(free),
            table=table_name,
            weight_grams=max(0, int(weight_grams or 0)),
        )
