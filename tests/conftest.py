"""Shared pytest fixtures and utilities for BarSync terminal tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from barsync import accounts, constants, data_manager  # noqa: E402
from barsync.audit import AuditRecorder  # noqa: E402
from barsync.cart import CartEngine  # noqa: E402
from barsync.checkout import CheckoutProcessor  # noqa: E402
from barsync.constants import Collection, Role  # noqa: E402
from barsync.data_manager import Business, Product, User  # noqa: E402
from barsync.entity_store import EntityStore  # noqa: E402
from barsync.remote import InMemoryRemoteStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_PASSWORD = "pass123"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "TerminalName = {terminal_name}\n"
    "SchemaVersion = {schema_version}\n"
)
_REMOTE_TEMPLATE = (
    "\n[Remote]\n"
    "BaseUrl = {base_url}\n"
    "TimeoutSeconds = 2\n"
    "MaxRetries = 2\n"
    "BackoffSeconds = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_file: Path
    terminal_name: str
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    """Use the cheapest bcrypt cost factor so hashing does not dominate runtime."""

    monkeypatch.setattr(accounts, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/store bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        terminal_name: str = "Main Bar",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        base_url: Optional[str] = None,
        create_store: bool = True,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        data_file = bundle_dir / "store.xlsx"
        if create_store:
            data_manager.create_store_workbook(data_file)
        data_file_entry = data_file.name if make_relative else str(data_file)
        text = _CONFIG_TEMPLATE.format(
            data_file=data_file_entry,
            terminal_name=terminal_name,
            schema_version=schema_version,
        )
        if base_url:
            text += _REMOTE_TEMPLATE.format(base_url=base_url)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(text)
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_file=data_file,
            terminal_name=terminal_name,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# Store and component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> EntityStore:
    """Return an empty memory-only store."""

    return EntityStore()


@pytest.fixture
def persistent_store(tmp_path: Path) -> EntityStore:
    """Return an empty store backed by a workbook in a temp folder."""

    return EntityStore.open(tmp_path / "store.xlsx")


@pytest.fixture
def audit(store: EntityStore) -> AuditRecorder:
    return AuditRecorder(store)


@pytest.fixture
def cart(store: EntityStore) -> CartEngine:
    return CartEngine(store)


@pytest.fixture
def checkout_processor(store: EntityStore, cart: CartEngine, audit: AuditRecorder) -> CheckoutProcessor:
    return CheckoutProcessor(store, cart, audit)


@pytest.fixture
def product_factory(store: EntityStore) -> Callable[..., Product]:
    """Factory that stores a product and returns it with its generated id."""

    def _create_product(
        name: str = "Tusker",
        *,
        price: str = "100",
        stock: int = 5,
        category: str = "Beer",
        buying_price: Optional[str] = None,
        business_id: Optional[str] = None,
    ) -> Product:
        product = Product(
            id="",
            name=name,
            category=category,
            price=Decimal(price),
            stock=stock,
            opening_stock=stock,
            buying_price=Decimal(buying_price) if buying_price is not None else None,
            business_id=business_id,
        )
        return store.add(Collection.PRODUCTS, product)

    return _create_product


@pytest.fixture
def business(store: EntityStore) -> Business:
    return store.add(Collection.BUSINESSES, Business(id="", name="Kilele Lounge", owner_name="Wanjiru"))


@pytest.fixture
def user_factory(store: EntityStore) -> Callable[..., User]:
    """Factory that stores a user with a hashed default password."""

    def _create_user(
        name: str,
        role: Role,
        business_id: Optional[str] = None,
        *,
        password: str = DEFAULT_PASSWORD,
    ) -> User:
        user = User(
            id="",
            name=name,
            role=role,
            business_id=business_id,
            password=accounts.hash_password(password),
        )
        return store.add(Collection.USERS, user)

    return _create_user


@pytest.fixture
def owner(business: Business, user_factory: Callable[..., User]) -> User:
    return user_factory("Wanjiru", Role.OWNER, business.id)


@pytest.fixture
def bartender(business: Business, user_factory: Callable[..., User]) -> User:
    return user_factory("Otieno", Role.BARTENDER, business.id)


@pytest.fixture
def super_admin(user_factory: Callable[..., User]) -> User:
    return user_factory("Root", Role.SUPER_ADMIN)


# ---------------------------------------------------------------------------
# Remote fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    """Return an in-memory remote seeded with one tenant and its staff."""

    remote = InMemoryRemoteStore()
    tenant = remote.seed_business(Business(id="bus_REMOTE1", name="Kilele Lounge", owner_name="Wanjiru"))
    remote.seed_user(
        User(
            id="user_OWNER1",
            name="Wanjiru",
            role=Role.OWNER,
            business_id=tenant.id,
            password=accounts.hash_password(DEFAULT_PASSWORD),
        )
    )
    remote.seed_user(
        User(
            id="user_BAR1",
            name="Otieno",
            role=Role.BARTENDER,
            business_id=tenant.id,
            password=accounts.hash_password(DEFAULT_PASSWORD),
        )
    )
    return remote


@pytest.fixture
def recorded_sleeps() -> list[float]:
    """Collect requested retry delays instead of sleeping."""

    return []


@pytest.fixture
def fake_sleep(recorded_sleeps: list[float]) -> Callable[[float], None]:
    return recorded_sleeps.append
