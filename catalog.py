from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from markupsafe import Markup, escape

logger = logging.getLogger(__name__)

KINDS = ("products", "articles", "lookbooks")


# -------------------------
# Helpers
# -------------------------
def _str(value: Any) -> str:
    if value is None:
        return ""
    try:
        return str(value).strip()
    except Exception:
        return ""


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(str(value).replace(",", "."))
    except Exception:
        return default


def _str_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(s for s in (_str(x) for x in value) if s)
    s = _str(value)
    return (s,) if s else ()


def format_eur(value: float) -> str:
    """French formatting: 1 310,00 EUR."""
    try:
        v = float(value)
    except Exception:
        v = 0.0
    s = f"{v:,.2f}"
    s = s.replace(",", "X").replace(".", ",").replace("X", " ")
    return f"{s} EUR"


# -------------------------
# Models
# -------------------------
@dataclass(frozen=True)
class SizeStock:
    label: str
    stock: int


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: float                        # major units (EUR)
    image: str = ""
    images: Tuple[str, ...] = ()
    description: str = ""
    collection: str = ""
    level1: str = ""
    level2: Tuple[str, ...] = ()        # single value or multi-value in the JSON
    level3: str = ""
    sizes: Tuple[SizeStock, ...] = ()
    size_guide: Tuple[Dict[str, str], ...] = ()
    mannequin: Dict[str, str] = field(default_factory=dict)
    stripe_price_id: str = ""
    weight_grams: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["Product"]:
        pid = _str(raw.get("id"))
        name = _str(raw.get("name"))
        if not pid or not name:
            return None

        sizes: List[SizeStock] = []
        for row in raw.get("sizes") or []:
            if not isinstance(row, dict):
                continue
            label = _str(row.get("label"))
            if not label:
                continue
            try:
                stock = max(0, int(row.get("stock") or 0))
            except Exception:
                stock = 0
            sizes.append(SizeStock(label=label, stock=stock))

        guide = tuple(
            {str(k): _str(v) for k, v in row.items()}
            for row in (raw.get("sizeGuide") or raw.get("size_guide") or [])
            if isinstance(row, dict)
        )
        mannequin = raw.get("mannequin") if isinstance(raw.get("mannequin"), dict) else {}

        weight = raw.get("weight_grams")
        try:
            weight_int: Optional[int] = int(weight) if weight is not None else None
        except Exception:
            weight_int = None

        image = _str(raw.get("image"))
        images = _str_list(raw.get("images")) or ((image,) if image else ())

        return cls(
            id=pid,
            name=name,
            price=_float(raw.get("price")),
            image=image or (images[0] if images else ""),
            images=images,
            description=_str(raw.get("description")),
            collection=_str(raw.get("collection")),
            level1=_str(raw.get("level1")),
            level2=tuple(t for v in _str_list(raw.get("level2")) for t in v.split()),
            level3=_str(raw.get("level3")),
            sizes=tuple(sizes),
            size_guide=guide,
            mannequin={str(k): _str(v) for k, v in mannequin.items()},
            stripe_price_id=_str(raw.get("stripePriceId") or raw.get("stripe_price_id")),
            weight_grams=weight_int,
        )

    def in_stock(self) -> bool:
        return not self.sizes or any(s.stock > 0 for s in self.sizes)

    def display_price(self) -> str:
        return format_eur(self.price)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["images"] = list(self.images)
        d["sizes"] = [asdict(s) for s in self.sizes]
        d["size_guide"] = list(self.size_guide)
        d["level2"] = list(self.level2)
        d["display_price"] = self.display_price()
        return d


@dataclass(frozen=True)
class Article:
    id: str
    title: str
    date: str = ""
    excerpt: str = ""
    image: str = ""
    content: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["Article"]:
        aid = _str(raw.get("id"))
        title = _str(raw.get("title"))
        if not aid or not title:
            return None
        return cls(
            id=aid,
            title=title,
            date=_str(raw.get("date")),
            excerpt=_str(raw.get("excerpt")),
            image=_str(raw.get("image")),
            content=_str(raw.get("content")),
        )

    def published_on(self) -> Optional[date]:
        return parse_article_date(self.date)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["content_html"] = str(format_article_html(self.content))
        return d


@dataclass(frozen=True)
class Lookbook:
    id: str
    title: str
    season: str = ""
    images: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["Lookbook"]:
        lid = _str(raw.get("id"))
        if not lid:
            return None
        return cls(
            id=lid,
            title=_str(raw.get("title")) or lid,
            season=_str(raw.get("season")),
            images=_str_list(raw.get("images")),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["images"] = list(self.images)
        return d


MODELS = {"products": Product, "articles": Article, "lookbooks": Lookbook}


# -------------------------
# Embedded defaults (used when nothing has been published yet)
# -------------------------
_GUIDE = [
    {"size": "Une", "poitrine": "86–91", "taille": "71–76", "hanches": "86–91"},
    {"size": "Deux", "poitrine": "91–96", "taille": "76–81", "hanches": "91–96"},
    {"size": "Trois", "poitrine": "96–101", "taille": "81–86", "hanches": "101–106"},
]

DEFAULT_PRODUCTS: List[Dict[str, Any]] = [
    {
        "id": "perfecto-en-cuir-noir",
        "name": "Perfecto en cuir noir",
        "price": 310,
        "image": "produit.jpg",
        "images": ["produit.jpg", "look2.jpg", "look3.jpg"],
        "description": "Perfecto fait de cuir légèrement usé, zips argentés et boutons métalliques.",
        "collection": "ss26",
        "level1": "vestiaire",
        "level2": ["feminin", "masculin"],
        "level3": "vestes",
        "sizes": [{"label": "Une", "stock": 0}, {"label": "Deux", "stock": 3}, {"label": "Trois", "stock": 5}],
        "mannequin": {"height": "1m78", "size": "Trois"},
        "sizeGuide": _GUIDE,
    },
    {
        "id": "chemise-soie-noir",
        "name": "Chemise soie noir",
        "price": 250,
        "image": "look2.jpg",
        "images": ["look2.jpg", "produit.jpg"],
        "description": "Chemise en soie pure, fluide et élégante. Manches longues, col classique.",
        "collection": "ss26",
        "level1": "vestiaire",
        "level2": "feminin",
        "level3": "chemises",
        "sizes": [{"label": "Une", "stock": 2}, {"label": "Deux", "stock": 4}, {"label": "Trois", "stock": 3}],
        "mannequin": {"height": "1m79", "size": "Trois"},
        "sizeGuide": _GUIDE,
    },
    {
        "id": "manteau-long-homme",
        "name": "Manteau long homme",
        "price": 420,
        "image": "produit3.jpg",
        "images": ["produit3.jpg", "look3.jpg"],
        "description": "Manteau long structuré en laine premium. Coupe droite et intemporelle.",
        "collection": "aw26",
        "level1": "vestiaire",
        "level2": "masculin",
        "level3": "manteaux",
        "sizes": [{"label": "Une", "stock": 1}, {"label": "Deux", "stock": 2}, {"label": "Trois", "stock": 3}],
        "mannequin": {"height": "1m78", "size": "Trois"},
        "sizeGuide": _GUIDE,
    },
]

DEFAULT_LOOKBOOKS: List[Dict[str, Any]] = [
    {
        "id": "ss26",
        "title": "Printemps & Été 2026",
        "season": "Première Collection",
        "images": ["look1.jpg", "look2.jpg", "look3.jpg", "look4.jpg", "look5.jpg", "look6.jpg"],
    },
    {
        "id": "aw26",
        "title": "Automne & Hiver 2026",
        "season": "Première Collection",
        "images": ["look3.jpg", "look4.jpg", "look5.jpg", "look6.jpg", "look1.jpg", "look2.jpg"],
    },
]

DEFAULT_ARTICLES: List[Dict[str, Any]] = [
    {
        "id": "qui-est-simone-sixx",
        "title": "Qui est Simone Sixx ?",
        "date": "19 février 2026",
        "excerpt": "Une maison parisienne entre vestiaire et parfum.",
        "image": "article1.jpg",
        "content": "Simone Sixx est née d'une chambre au sixième étage.\n\nLe Journal raconte la suite.",
    },
]

DEFAULTS = {"products": DEFAULT_PRODUCTS, "articles": DEFAULT_ARTICLES, "lookbooks": DEFAULT_LOOKBOOKS}


# -------------------------
# Article dates / content
# -------------------------
FRENCH_MONTHS = {
    "janvier": 1, "fevrier": 2, "février": 2, "mars": 3, "avril": 4, "mai": 5, "juin": 6,
    "juillet": 7, "aout": 8, "août": 8, "septembre": 9, "octobre": 10, "novembre": 11,
    "decembre": 12, "décembre": 12,
}

_SLASH_DATE = re.compile(r"^\s*(\d{1,2})\s*[/.-]\s*(\d{1,2})\s*[/.-]\s*(\d{2,4})\s*$")
_LONG_DATE = re.compile(r"^\s*(\d{1,2})\s+([a-zàâäçéèêëîïôöùûüÿ]+)\s+(\d{4})\s*$", re.IGNORECASE)


def parse_article_date(raw: str) -> Optional[date]:
    """Parse "19/02/26", "19.02.2026" or "19 février 2026" (falls back to ISO)."""
    s = _str(raw)
    if not s:
        return None

    m = _SLASH_DATE.match(s)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if year < 100:
            year += 2000
        try:
            return date(year, month, day) if year >= 1970 else None
        except ValueError:
            return None

    m = _LONG_DATE.match(re.sub(r"\s+", " ", s.lower()))
    if m:
        month = FRENCH_MONTHS.get(m.group(2).lower())
        if month:
            try:
                return date(int(m.group(3)), month, int(m.group(1)))
            except ValueError:
                return None

    try:
        return datetime.fromisoformat(s).date()
    except ValueError:
        return None


def sort_articles(articles: List[Article]) -> List[Article]:
    """Newest first; undated articles keep their order at the end."""
    indexed = list(enumerate(articles))
    indexed.sort(key=lambda row: (row[1].published_on() is None, -(row[1].published_on() or date.min).toordinal(), row[0]))
    return [a for _, a in indexed]


def format_article_html(raw: str) -> Markup:
    """Blank lines split paragraphs; single newlines become <br>."""
    if not raw:
        return Markup("")
    text = str(raw).replace("\r\n", "\n").replace("\r", "\n")
    parts = [p.strip() for p in re.split(r"\n\s*\n+", text)]
    out = []
    for p in parts:
        if not p:
            continue
        out.append(Markup("<p>") + Markup("<br>").join(escape(line) for line in p.split("\n")) + Markup("</p>"))
    return Markup("\n").join(out)


# -------------------------
# Filtering (hierarchical categories)
# -------------------------
@dataclass(frozen=True)
class CategoryFilter:
    collection: Optional[str] = None
    level1: Optional[str] = None
    level2: Optional[str] = None
    level3: Optional[str] = None

    @classmethod
    def from_args(cls, args: Any) -> "CategoryFilter":
        def _opt(name: str) -> Optional[str]:
            v = _str(args.get(name))
            return v or None

        return cls(
            collection=_opt("collection"),
            level1=_opt("level1"),
            level2=_opt("level2"),
            level3=_opt("level3"),
        )

    def is_empty(self) -> bool:
        return not (self.collection or self.level1 or self.level2 or self.level3)


def matches(product: Product, flt: CategoryFilter) -> bool:
    if flt.collection:
        return product.collection == flt.collection
    if flt.is_empty():
        return True
    if product.level1 != flt.level1:
        return False
    if flt.level2 and flt.level2 not in product.level2:
        return False
    if flt.level3 and product.level3 != flt.level3:
        return False
    return True


def filter_products(products: List[Product], flt: CategoryFilter) -> List[Product]:
    """Collection selection is exclusive; with no selection everything shows."""
    return [p for p in products if matches(p, flt)]


# -------------------------
# Published store
# -------------------------
class CatalogStore:
    """Reads the published JSON files (``<static>/data/<kind>.json``).

    A missing or broken file falls back to the embedded defaults. Parsed
    records are cached per file mtime, so a fresh publish is picked up.
    """

    def __init__(self, static_dir: str) -> None:
        self.data_dir = os.path.join(static_dir, "data")
        self._cache: Dict[str, Tuple[float, List[Any]]] = {}

    def path_for(self, kind: str) -> str:
        if kind not in KINDS:
            raise ValueError(f"Unknown catalog kind {kind!r}")
        return os.path.join(self.data_dir, f"{kind}.json")

    def _parse(self, kind: str, raw: Any) -> List[Any]:
        model = MODELS[kind]
        out = []
        seen = set()
        for row in raw if isinstance(raw, list) else []:
            if not isinstance(row, dict):
                continue
            rec = model.from_dict(row)
            if rec is None or rec.id in seen:
                continue
            seen.add(rec.id)
            out.append(rec)
        return out

    def load(self, kind: str) -> List[Any]:
        path = self.path_for(kind)
        try:
            mtime = os.path.getmtime(path)
        except OSError:
            return self._parse(kind, DEFAULTS[kind])

        cached = self._cache.get(kind)
        if cached and cached[0] == mtime:
            return cached[1]

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Published %s unreadable (%s), using defaults", kind, e)
            return self._parse(kind, DEFAULTS[kind])

        records = self._parse(kind, raw)
        if not records:
            records = self._parse(kind, DEFAULTS[kind])
        self._cache[kind] = (mtime, records)
        return records

    def products(self, flt: Optional[CategoryFilter] = None) -> List[Product]:
        items = self.load("products")
        return filter_products(items, flt) if flt else items

    def articles(self) -> List[Article]:
        return sort_articles(self.load("articles"))

    def lookbooks(self) -> List[Lookbook]:
        return self.load("lookbooks")

    def get(self, kind: str, record_id: str) -> Optional[Any]:
        return next((r for r in self.load(kind) if r.id == record_id), None)

    def publish(self, kind: str, records: Any) -> int:
        """Validate and atomically rewrite the published file; returns the count."""
        if not isinstance(records, list):
            raise ValueError("Expected a JSON array")
        parsed = self._parse(kind, records)
        if len(parsed) != len(records):
            raise ValueError("Some records are invalid or duplicated (id and name/title required)")

        path = self.path_for(kind)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(records, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
        self._cache.pop(kind, None)
        logger.info("Published %d %s", len(parsed), kind)
        return len(parsed)
