"""Catalog collaborator: products, promo codes and client records.

The production catalog lives in a spreadsheet fronted by a small JSON
service (``SheetCatalogClient``). ``JsonCatalogRepository`` keeps the same
data in local files for development and tests.
"""

import json
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

import requests

from .logging import log_event

MAX_STOCK = 999999
UNAVAILABLE_STATUSES = {"draft", "inactive"}


class CatalogError(RuntimeError):
    """The catalog could not be read or written."""


class InsufficientStock(CatalogError):
    """A strict decrement asked for more units than the catalog holds."""


def normalize_status(value: Optional[str]) -> str:
    v = (value or "").strip().lower()
    if v in ("active", "published", ""):
        return "published"
    if v in ("hidden", "draft", "draft list"):
        return "draft"
    if v == "inactive":
        return "inactive"
    if v in ("stock out", "stock-out"):
        return "stock-out"
    return "published"


def _number(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Product:
    id: str
    slug: str
    name: str
    price: float
    stock: int
    status: str = "published"
    description: str = ""
    details: str = ""
    category: str = ""
    image: str = ""
    icons: List[str] = field(default_factory=list)

    @property
    def is_available(self) -> bool:
        return self.status not in UNAVAILABLE_STATUSES

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict) -> "Product":
        icons = raw.get("icons") or []
        if isinstance(icons, str):
            icons = [i.strip() for i in icons.split(",") if i.strip()]
        return cls(
            id=str(raw.get("id", "")).strip(),
            slug=str(raw.get("slug", "")).strip(),
            name=str(raw.get("name", "")),
            price=_number(raw.get("price")),
            stock=int(_number(raw.get("stock"))),
            status=normalize_status(raw.get("status")),
            description=str(raw.get("description") or ""),
            details=str(raw.get("details") or ""),
            category=str(raw.get("category") or ""),
            image=str(raw.get("image") or ""),
            icons=list(icons),
        )

    def matches(self, ref) -> bool:
        ref = str(ref).strip()
        return bool(ref) and (ref == self.id or ref == self.slug)


@dataclass
class PromoCode:
    code: str
    discount: float
    active: bool = True

    @classmethod
    def from_dict(cls, raw: Dict) -> "PromoCode":
        active = raw.get("active", True)
        if isinstance(active, str):
            active = active.strip().lower() in ("true", "yes", "1", "active")
        return cls(
            code=str(raw.get("code", "")).strip().upper(),
            discount=_number(raw.get("discount")),
            active=bool(active),
        )


@dataclass
class ClientRecord:
    email: str
    first_name: str = ""
    last_name: str = ""
    address: str = ""
    city: str = ""
    province: str = ""
    zip_code: str = ""
    country: str = ""
    order_count: int = 0
    total_spent: float = 0.0
    last_order_date: str = ""
    products_purchased: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict) -> "ClientRecord":
        known = {k: raw[k] for k in cls.__dataclass_fields__ if k in raw}
        return cls(**known)


def find_product(products: Iterable[Product], ref) -> Optional[Product]:
    for product in products:
        if product.matches(ref):
            return product
    return None


def find_promo(codes: Iterable[PromoCode], code: Optional[str]) -> Optional[PromoCode]:
    """Active codes only; a code worth nothing counts as no code at all."""
    normalized = (code or "").strip().upper()
    if not normalized:
        return None
    for promo in codes:
        if promo.code == normalized and promo.active and float(promo.discount or 0) > 0:
            return promo
    return None


def validate_stock_items(items) -> List[Product]:
    """Validate a dashboard stock upload; raises ValueError naming the bad row."""
    if not isinstance(items, list) or not items:
        raise ValueError("items must be a non-empty array.")
    products = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"items[{i}] must be an object.")
        if not str(item.get("id") or "").strip():
            raise ValueError(f"items[{i}] must have a non-empty id.")
        if not str(item.get("slug") or "").strip():
            raise ValueError(f"items[{i}] must have a non-empty slug.")
        try:
            stock = float(item.get("stock"))
        except (TypeError, ValueError):
            stock = -1
        if stock != stock or stock < 0 or stock > MAX_STOCK:
            raise ValueError(f"items[{i}] stock must be a number between 0 and {MAX_STOCK}.")
        products.append(Product.from_dict(item))
    return products


def validate_promo_items(items) -> List[PromoCode]:
    if not isinstance(items, list):
        raise ValueError("codes must be an array.")
    codes = []
    for i, item in enumerate(items):
        if not isinstance(item, dict) or not str(item.get("code") or "").strip():
            raise ValueError(f"codes[{i}] must have a non-empty code.")
        promo = PromoCode.from_dict(item)
        if not 0 < promo.discount <= 100:
            raise ValueError(f"codes[{i}] discount must be a percentage between 0 and 100.")
        codes.append(promo)
    return codes


def merge_client(existing: Optional[ClientRecord], incoming: ClientRecord, order_total: float) -> ClientRecord:
    merged = incoming if existing is None else existing
    if existing is not None:
        for name in ("first_name", "last_name", "address", "city", "province", "zip_code", "country"):
            value = getattr(incoming, name)
            if value:
                setattr(merged, name, value)
    merged.order_count += 1
    merged.total_spent = round(merged.total_spent + order_total, 2)
    merged.last_order_date = incoming.last_order_date or datetime.now(timezone.utc).date().isoformat()
    for product in incoming.products_purchased:
        if product not in merged.products_purchased:
            merged.products_purchased.append(product)
    return merged


class Catalog(Protocol):
    def read_products(self) -> List[Product]: ...

    def write_products(self, products: Sequence[Product]) -> None: ...

    def read_promo_codes(self) -> List[PromoCode]: ...

    def write_promo_codes(self, codes: Sequence[PromoCode]) -> None: ...

    def read_clients(self) -> List[ClientRecord]: ...

    def upsert_client(self, client: ClientRecord, order_total: float) -> ClientRecord: ...


class SheetCatalogClient:
    """JSON-over-HTTP client for the spreadsheet-backed catalog service."""

    def __init__(self, base_url: str, api_token: Optional[str] = None, timeout: float = 10.0, session=None):
        if not base_url:
            raise CatalogError("Catalog service URL is not configured")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http = session or requests.Session()
        if api_token:
            self._http.headers["Authorization"] = f"Bearer {api_token}"

    def _request(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict:
        url = f"{self._base_url}{path}"
        try:
            response = self._http.request(method, url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            return response.json() if response.content else {}
        except requests.exceptions.Timeout as exc:
            raise CatalogError(f"Catalog request timed out: {method} {path}") from exc
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise CatalogError(f"Catalog request failed: {method} {path}: {exc}") from exc

    def read_products(self) -> List[Product]:
        data = self._request("GET", "/products")
        return [Product.from_dict(p) for p in data.get("products", []) if str(p.get("id", "")).strip()]

    def write_products(self, products: Sequence[Product]) -> None:
        self._request("PUT", "/products", {"products": [p.to_dict() for p in products]})

    def read_promo_codes(self) -> List[PromoCode]:
        data = self._request("GET", "/promo-codes")
        return [PromoCode.from_dict(c) for c in data.get("codes", []) if c.get("code")]

    def write_promo_codes(self, codes: Sequence[PromoCode]) -> None:
        self._request("PUT", "/promo-codes", {"codes": [asdict(c) for c in codes]})

    def read_clients(self) -> List[ClientRecord]:
        data = self._request("GET", "/clients")
        return [ClientRecord.from_dict(c) for c in data.get("clients", []) if c.get("email")]

    def upsert_client(self, client: ClientRecord, order_total: float) -> ClientRecord:
        data = self._request("POST", "/clients", {"client": asdict(client), "orderTotal": order_total})
        return ClientRecord.from_dict(data.get("client") or asdict(client))


class JsonCatalogRepository:
    """File-backed catalog: products.json, promo_codes.json, clients.json."""

    def __init__(self, data_dir: Path) -> None:
        self._dir = Path(data_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self, name: str) -> List[Dict]:
        path = self._dir / name
        if not path.exists():
            return []
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CatalogError(f"{name} is not valid JSON") from exc
        if not isinstance(payload, list):
            raise CatalogError(f"{name} must contain a JSON array")
        return [item for item in payload if isinstance(item, dict)]

    def _write(self, name: str, data: List[Dict]) -> None:
        content = json.dumps(data, ensure_ascii=False, indent=2)
        (self._dir / name).write_text(content + "\n", encoding="utf-8")

    def read_products(self) -> List[Product]:
        return [Product.from_dict(p) for p in self._load("products.json") if str(p.get("id", "")).strip()]

    def write_products(self, products: Sequence[Product]) -> None:
        self._write("products.json", [p.to_dict() for p in products])

    def read_promo_codes(self) -> List[PromoCode]:
        return [PromoCode.from_dict(c) for c in self._load("promo_codes.json") if c.get("code")]

    def write_promo_codes(self, codes: Sequence[PromoCode]) -> None:
        self._write("promo_codes.json", [asdict(c) for c in codes])

    def read_clients(self) -> List[ClientRecord]:
        return [ClientRecord.from_dict(c) for c in self._load("clients.json") if c.get("email")]

    def upsert_client(self, client: ClientRecord, order_total: float) -> ClientRecord:
        with self._lock:
            clients = self.read_clients()
            key = client.email.strip().lower()
            existing = next((c for c in clients if c.email.strip().lower() == key), None)
            merged = merge_client(existing, client, order_total)
            if existing is None:
                clients.append(merged)
            self._write("clients.json", [asdict(c) for c in clients])
            return merged


@dataclass
class StockChange:
    ref: str
    name: str
    stock: int


class StockLedger:
    """Serializes read-modify-write stock decrements against the catalog."""

    _lock = threading.RLock()

    def __init__(self, catalog: Catalog, low_stock_threshold: int = 5) -> None:
        self._catalog = catalog
        self._threshold = low_stock_threshold

    @property
    def low_stock_threshold(self) -> int:
        return self._threshold

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Keep other stock changes out while a caller checks and then takes stock."""
        with self._lock:
            yield

    def decrement(self, items: Sequence[Dict], strict: bool = False) -> Dict[str, List]:
        """Subtract ordered quantities and write the catalog back.

        ``items`` are order lines with ``productRef``/``name``/``quantity``.
        With ``strict`` nothing is written and InsufficientStock is raised when
        any product has less stock than the lines ask for; otherwise stock is
        floored at zero, since a paid card order has to be honoured anyway.
        Returns ``{"ordered": [StockChange], "low_stock": [Product]}``.
        """
        with self._lock:
            products = self._catalog.read_products()
            wanted = {}
            for product in products:
                qty = sum(int(i.get("quantity") or 0) for i in items if product.matches(i.get("productRef")))
                if qty:
                    wanted[product.id] = qty
            short = [p for p in products if wanted.get(p.id, 0) > p.stock]
            if short and strict:
                p = short[0]
                raise InsufficientStock(f'Insufficient stock for "{p.name or p.id}". Available: {max(0, p.stock)}, requested: {wanted[p.id]}.')
            for product in products:
                if product.id in wanted:
                    product.stock = max(0, product.stock - wanted[product.id])
            self._catalog.write_products(products)

        if short:
            log_event("warning", "stock.oversold", items=[p.id for p in short])
        low_stock = [p for p in products if p.stock <= self._threshold]
        ordered = []
        for item in items:
            match = find_product(products, item.get("productRef"))
            ordered.append(StockChange(ref=str(item.get("productRef")), name=str(item.get("name", "")), stock=match.stock if match else 0))
        log_event("info", "stock.decremented", lines=len(items), low_stock=len(low_stock))
        return {"ordered": ordered, "low_stock": low_stock}


def build_catalog(config) -> Catalog:
    """Pick the HTTP catalog when a service URL is set, else local JSON files."""
    if config.catalog.service_url:
        return SheetCatalogClient(config.catalog.service_url, config.catalog.api_token, config.catalog.timeout_seconds)
    return JsonCatalogRepository(config.catalog_dir)
