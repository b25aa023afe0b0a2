"""Data access layer for the BarSync terminal.

This module provides low-level helpers that read from and write to the local
store workbook (``barsync_store.xlsx`` by default). Business logic belongs
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record types: the frozen dataclasses shared by every layer.
3. Workbook lifecycle: creating, opening, and atomically persisting the
   workbook, plus converting rows to and from records.
"""


from __future__ import annotations

import configparser
import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    GLOBAL_TENANT_ID,
    META_SHEET,
    Collection,
    PaymentMethod,
    Role,
    SubscriptionStatus,
    UserStatus,
)


CONFIG_FILE_NAME = "config.ini"
DEFAULT_DATA_FILE = "barsync_store.xlsx"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    Collection.PRODUCTS.value: [
        "ProductID",
        "Name",
        "Category",
        "Price",
        "Stock",
        "OpeningStock",
        "Additions",
        "BuyingPrice",
        "ImageUrl",
        "CreatedAt",
        "UpdatedAt",
        "BusinessID",
    ],
    Collection.SALES.value: [
        "SaleID",
        "BusinessID",
        "Date",
        "Items",
        "TotalAmount",
        "PaymentMethod",
        "SalesPerson",
        "CustomerPhone",
    ],
    Collection.USERS.value: [
        "UserID",
        "Name",
        "Role",
        "BusinessID",
        "Avatar",
        "Phone",
        "Status",
        "Password",
        "UpdatedAt",
    ],
    Collection.BUSINESSES.value: [
        "BusinessID",
        "Name",
        "OwnerName",
        "SubscriptionStatus",
        "SubscriptionPlan",
        "PaymentStatus",
        "VerificationNote",
        "RemoteDatabase",
        "RemoteCollection",
        "RemoteEndpoint",
        "CreatedAt",
        "UpdatedAt",
        "Logo",
    ],
    Collection.AUDIT_LOGS.value: [
        "LogID",
        "Timestamp",
        "UserID",
        "UserName",
        "Action",
        "Details",
        "BusinessID",
    ],
    META_SHEET: ["Key", "Value"],
}


@dataclass(frozen=True)
class RemoteSettings:
    """Connection parameters for the remote snapshot store."""

    base_url: str
    timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff_seconds: float = 0.5


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    terminal_name: str
    schema_version: str
    remote: Optional[RemoteSettings] = None


@dataclass(frozen=True)
class Product:
    """A sellable item in a business's product list."""

    id: str
    name: str
    category: str
    price: Decimal
    stock: int
    opening_stock: int
    additions: int = 0
    buying_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    business_id: Optional[str] = None


@dataclass(frozen=True)
class CartItem:
    """A product snapshot reserved in the active cart."""

    product: Product
    quantity: int

    @property
    def id(self) -> str:
        return self.product.id

    @property
    def price(self) -> Decimal:
        return self.product.price

    @property
    def line_total(self) -> Decimal:
        return self.product.price * self.quantity


@dataclass(frozen=True)
class Sale:
    """Immutable record of a completed checkout."""

    id: str
    business_id: str
    date: str
    items: tuple[CartItem, ...]
    total_amount: Decimal
    payment_method: PaymentMethod
    sales_person: str
    customer_phone: Optional[str] = None


@dataclass(frozen=True)
class User:
    id: str
    name: str
    role: Role
    business_id: Optional[str] = None
    avatar: Optional[str] = None
    phone: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    password: Optional[str] = None
    updated_at: str = ""


@dataclass(frozen=True)
class Business:
    id: str
    name: str
    owner_name: str
    subscription_status: SubscriptionStatus = SubscriptionStatus.TRIAL
    subscription_plan: str = "Basic"
    payment_status: str = "Pending"
    verification_note: Optional[str] = None
    remote_database: Optional[str] = None
    remote_collection: Optional[str] = None
    remote_endpoint: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    logo: Optional[str] = None


@dataclass(frozen=True)
class AuditLog:
    """Immutable audit trail entry."""

    id: str
    timestamp: str
    user_id: str
    user_name: str
    action: str
    details: str
    business_id: Optional[str] = None


def tenant_of(business_id: Optional[str]) -> str:
    """Normalise a record's business id; platform records share one tenant."""

    return business_id or GLOBAL_TENANT_ID


@dataclass
class StoreSnapshot:
    """Full contents of the local store, one list per collection."""

    products: List[Product] = field(default_factory=list)
    sales: List[Sale] = field(default_factory=list)
    users: List[User] = field(default_factory=list)
    businesses: List[Business] = field(default_factory=list)
    audit_logs: List[AuditLog] = field(default_factory=list)
    meta: Dict[str, str] = field(default_factory=dict)

    def records(self, collection: Collection) -> List[Any]:
        """Return the list backing ``collection``."""

        return {
            Collection.PRODUCTS: self.products,
            Collection.SALES: self.sales,
            Collection.USERS: self.users,
            Collection.BUSINESSES: self.businesses,
            Collection.AUDIT_LOGS: self.audit_logs,
        }[collection]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the terminal behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains
            ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``TerminalName`` and
    ``SchemaVersion``. The ``[Remote]`` section is optional; without a
    ``BaseUrl`` the terminal runs purely offline. Relative data file paths are
    anchored at ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric remote option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        terminal_name = parser.get("System", "TerminalName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    remote: Optional[RemoteSettings] = None
    base_url = parser.get("Remote", "BaseUrl", fallback="").strip()
    if base_url:
        remote = RemoteSettings(
            base_url=base_url.rstrip("/"),
            timeout_seconds=parser.getfloat("Remote", "TimeoutSeconds", fallback=5.0),
            max_retries=parser.getint("Remote", "MaxRetries", fallback=3),
            backoff_seconds=parser.getfloat("Remote", "BackoffSeconds", fallback=0.5),
        )

    return ConfigSettings(
        data_file=data_file_path,
        terminal_name=terminal_name,
        schema_version=schema_version,
        remote=remote,
    )


def load_settings(config_path: Optional[Path] = None) -> ConfigSettings:
    """Find, read, and parse ``config.ini`` in one step."""

    located = Path(find_config_file(config_path)).expanduser().resolve()
    parser = read_config(located)
    return parse_settings(parser, base_path=located.parent)


def create_store_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty store workbook with every sheet and its header row.

    Args:
        destination (Path): Where the workbook should be written.
        overwrite (bool): Replace an existing file when ``True``.

    Returns:
        Path: The resolved destination.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is ``False``.
    """

    dest = Path(destination).expanduser().resolve()
    if dest.exists() and not overwrite:
        raise FileExistsError(f"Store already exists: {dest}")

    save_workbook(build_workbook(StoreSnapshot()), dest)
    log.info("Created store workbook '%s'", dest)
    return dest


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the store workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically.

    The workbook is written to a temporary sibling and moved over the
    destination with :func:`os.replace`, so a failed write never leaves a
    truncated store behind. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.stem}.tmp{dest.suffix}")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        if staging.exists():
            staging.unlink()


def build_workbook(snapshot: StoreSnapshot) -> Workbook:
    """Render a snapshot into a fresh workbook with one sheet per collection."""

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for sheet_name, columns in SHEET_COLUMNS.items():
        sheet = workbook.create_sheet(title=sheet_name)
        sheet.append(list(columns))
        for cell in sheet[1]:
            cell.font = Font(bold=True)

    for record in snapshot.products:
        workbook[Collection.PRODUCTS.value].append(serialize_product(record))
    for record in snapshot.sales:
        workbook[Collection.SALES.value].append(serialize_sale(record))
    for record in snapshot.users:
        workbook[Collection.USERS.value].append(serialize_user(record))
    for record in snapshot.businesses:
        workbook[Collection.BUSINESSES.value].append(serialize_business(record))
    for record in snapshot.audit_logs:
        workbook[Collection.AUDIT_LOGS.value].append(serialize_audit_log(record))
    for key, value in sorted(snapshot.meta.items()):
        workbook[META_SHEET].append([key, value])
    return workbook


def load_snapshot(data_file: Path) -> StoreSnapshot:
    """Read the whole store workbook into a :class:`StoreSnapshot`."""

    workbook = open_workbook(data_file)
    return read_snapshot(workbook)


def read_snapshot(workbook: Workbook) -> StoreSnapshot:
    """Convert every sheet of ``workbook`` into typed records.

    Raises:
        KeyError: If one of the expected sheets is missing.
    """

    missing = [name for name in SHEET_COLUMNS if name not in workbook.sheetnames]
    if missing:
        raise KeyError(f"Store workbook is missing sheets: {', '.join(missing)}")

    return StoreSnapshot(
        products=[deserialize_product(raw) for raw in iter_rows(workbook, Collection.PRODUCTS.value)],
        sales=[deserialize_sale(raw) for raw in iter_rows(workbook, Collection.SALES.value)],
        users=[deserialize_user(raw) for raw in iter_rows(workbook, Collection.USERS.value)],
        businesses=[deserialize_business(raw) for raw in iter_rows(workbook, Collection.BUSINESSES.value)],
        audit_logs=[deserialize_audit_log(raw) for raw in iter_rows(workbook, Collection.AUDIT_LOGS.value)],
        meta={str(raw[0]): _text(raw[1]) for raw in iter_rows(workbook, META_SHEET)},
    )


def save_snapshot(snapshot: StoreSnapshot, destination: Path) -> None:
    """Render and atomically persist a snapshot."""

    save_workbook(build_workbook(snapshot), destination)


def iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    """Yield raw value tuples of ``sheet_name``, skipping the header and blanks."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _optional_text(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _decimal(value: object, default: str = "0") -> Decimal:
    return Decimal(str(value)) if value is not None and value != "" else Decimal(default)


def _optional_decimal(value: object) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _int(value: object) -> int:
    return int(value) if value is not None and value != "" else 0


def serialize_product(record: Product) -> list[object]:
    return [
        record.id,
        record.name,
        record.category,
        record.price,
        record.stock,
        record.opening_stock,
        record.additions,
        record.buying_price,
        record.image_url,
        record.created_at,
        record.updated_at,
        record.business_id,
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw ``Products`` row into a :class:`Product`.

    Numeric cells come back from Excel as ``int`` or ``float``; prices are
    normalised through ``str`` into :class:`~decimal.Decimal` and counts into
    ``int``.

    Workbooks written before products carried a business id have no
    twelfth cell; those products load without a tenant.
    """

    (
        product_id,
        name,
        category,
        price,
        stock,
        opening_stock,
        additions,
        buying_price,
        image_url,
        created_at,
        updated_at,
    ) = raw_row[:11]
    business_id = raw_row[11] if len(raw_row) > 11 else None
    return Product(
        id=str(product_id),
        name=_text(name),
        category=_text(category),
        price=_decimal(price),
        stock=_int(stock),
        opening_stock=_int(opening_stock),
        additions=_int(additions),
        buying_price=_optional_decimal(buying_price),
        image_url=_optional_text(image_url),
        created_at=_text(created_at),
        updated_at=_text(updated_at),
        business_id=_optional_text(business_id),
    )


def encode_cart_items(items: Iterable[CartItem]) -> str:
    """Encode frozen sale lines as a JSON document for a single cell.

    Each line is flattened into the product's fields plus ``quantity``.
    Decimal values are written as strings so prices survive the round trip
    exactly.
    """

    payload = []
    for item in items:
        product = item.product
        payload.append(
            {
                "id": product.id,
                "name": product.name,
                "category": product.category,
                "price": str(product.price),
                "stock": product.stock,
                "opening_stock": product.opening_stock,
                "additions": product.additions,
                "buying_price": None if product.buying_price is None else str(product.buying_price),
                "image_url": product.image_url,
                "created_at": product.created_at,
                "updated_at": product.updated_at,
                "business_id": product.business_id,
                "quantity": item.quantity,
            }
        )
    return json.dumps(payload, separators=(",", ":"))


def decode_cart_items(raw: object) -> tuple[CartItem, ...]:
    if raw is None or raw == "":
        return ()
    items = []
    for entry in json.loads(str(raw)):
        product = Product(
            id=str(entry["id"]),
            name=entry.get("name", ""),
            category=entry.get("category", ""),
            price=_decimal(entry.get("price")),
            stock=_int(entry.get("stock")),
            opening_stock=_int(entry.get("opening_stock")),
            additions=_int(entry.get("additions")),
            buying_price=_optional_decimal(entry.get("buying_price")),
            image_url=entry.get("image_url"),
            created_at=entry.get("created_at", ""),
            updated_at=entry.get("updated_at", ""),
            business_id=entry.get("business_id"),
        )
        items.append(CartItem(product=product, quantity=int(entry["quantity"])))
    return tuple(items)


def serialize_sale(record: Sale) -> list[object]:
    return [
        record.id,
        record.business_id,
        record.date,
        encode_cart_items(record.items),
        record.total_amount,
        record.payment_method.value,
        record.sales_person,
        record.customer_phone,
    ]


def deserialize_sale(raw_row: Sequence[object]) -> Sale:
    (
        sale_id,
        business_id,
        date,
        items,
        total_amount,
        payment_method,
        sales_person,
        customer_phone,
    ) = raw_row[:8]
    return Sale(
        id=str(sale_id),
        business_id=_text(business_id),
        date=_text(date),
        items=decode_cart_items(items),
        total_amount=_decimal(total_amount),
        payment_method=PaymentMethod(str(payment_method)),
        sales_person=_text(sales_person),
        customer_phone=_optional_text(customer_phone),
    )


def serialize_user(record: User) -> list[object]:
    return [
        record.id,
        record.name,
        record.role.value,
        record.business_id,
        record.avatar,
        record.phone,
        record.status.value,
        record.password,
        record.updated_at,
    ]


def deserialize_user(raw_row: Sequence[object]) -> User:
    (
        user_id,
        name,
        role,
        business_id,
        avatar,
        phone,
        status,
        password,
        updated_at,
    ) = raw_row[:9]
    return User(
        id=str(user_id),
        name=_text(name),
        role=Role(str(role)),
        business_id=_optional_text(business_id),
        avatar=_optional_text(avatar),
        # Excel turns digit-only phone numbers into numbers.
        phone=_optional_text(phone),
        status=UserStatus(str(status)) if status else UserStatus.ACTIVE,
        password=_optional_text(password),
        updated_at=_text(updated_at),
    )


def serialize_business(record: Business) -> list[object]:
    return [
        record.id,
        record.name,
        record.owner_name,
        record.subscription_status.value,
        record.subscription_plan,
        record.payment_status,
        record.verification_note,
        record.remote_database,
        record.remote_collection,
        record.remote_endpoint,
        record.created_at,
        record.updated_at,
        record.logo,
    ]


def deserialize_business(raw_row: Sequence[object]) -> Business:
    (
        business_id,
        name,
        owner_name,
        subscription_status,
        subscription_plan,
        payment_status,
        verification_note,
        remote_database,
        remote_collection,
        remote_endpoint,
        created_at,
        updated_at,
        logo,
    ) = raw_row[:13]
    return Business(
        id=str(business_id),
        name=_text(name),
        owner_name=_text(owner_name),
        subscription_status=(
            SubscriptionStatus(str(subscription_status))
            if subscription_status
            else SubscriptionStatus.TRIAL
        ),
        subscription_plan=_text(subscription_plan),
        payment_status=_text(payment_status),
        verification_note=_optional_text(verification_note),
        remote_database=_optional_text(remote_database),
        remote_collection=_optional_text(remote_collection),
        remote_endpoint=_optional_text(remote_endpoint),
        created_at=_text(created_at),
        updated_at=_text(updated_at),
        logo=_optional_text(logo),
    )


def serialize_audit_log(record: AuditLog) -> list[object]:
    return [
        record.id,
        record.timestamp,
        record.user_id,
        record.user_name,
        record.action,
        record.details,
        record.business_id,
    ]


def deserialize_audit_log(raw_row: Sequence[object]) -> AuditLog:
    log_id, timestamp, user_id, user_name, action, details, business_id = raw_row[:7]
    return AuditLog(
        id=str(log_id),
        timestamp=_text(timestamp),
        user_id=_text(user_id),
        user_name=_text(user_name),
        action=_text(action),
        details=_text(details),
        business_id=_optional_text(business_id),
    )
