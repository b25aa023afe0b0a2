"""In-memory entity store backed by the durable store workbook.

The store owns the five collections of a terminal session (products, sales,
users, businesses, audit logs) and is the single mutable resource every other
component works through. All access is serialised by one re-entrant lock per
store instance; cross-collection steps such as "reserve stock and update the
cart" or "append sale and audit entry" run inside :meth:`EntityStore.transaction`
so they commit, persist, and roll back together.

Every committed mutation is written to disk before control returns to the
caller. A failed write rolls the in-memory state back and raises
:class:`~barsync.errors.StorageError`.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

from . import data_manager, log
from .constants import APPEND_ONLY_COLLECTIONS, Collection
from .data_manager import AuditLog, Business, Product, Sale, StoreSnapshot, User, tenant_of
from .errors import InvalidState, NotFound, StorageError, ValidationError


Listener = Callable[[Set[Collection]], None]

RECORD_TYPES: Dict[Collection, type] = {
    Collection.PRODUCTS: Product,
    Collection.SALES: Sale,
    Collection.USERS: User,
    Collection.BUSINESSES: Business,
    Collection.AUDIT_LOGS: AuditLog,
}

ID_PREFIXES: Dict[Collection, str] = {
    Collection.PRODUCTS: "P",
    Collection.SALES: "S",
    Collection.USERS: "user_",
    Collection.BUSINESSES: "bus_",
    Collection.AUDIT_LOGS: "L",
}

LAST_SYNC_KEY = "last_sync"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""

    return datetime.now(UTC).isoformat()


def generate_id(prefix: str = "") -> str:
    """Generate a practically unique identifier.

    Twelve hex digits of a random UUID give 48 bits of entropy, which keeps
    the collision probability negligible for the record counts of a single
    terminal.
    """

    return f"{prefix}{uuid.uuid4().hex[:12].upper()}"


def _modified_key(collection: Collection, tenant: Optional[str] = None) -> str:
    key = f"modified_at.{collection.value}"
    return f"{key}.{tenant}" if tenant else key


class EntityStore:
    """Authoritative collections for one terminal session.

    Args:
        data_file (Path | None): Store workbook receiving every commit. When
            ``None`` the store is memory-only, which is only meant for tests
            and throwaway sessions.
        snapshot (StoreSnapshot | None): Initial contents.
    """

    def __init__(self, data_file: Optional[Path] = None, snapshot: Optional[StoreSnapshot] = None) -> None:
        self._data_file = Path(data_file) if data_file is not None else None
        self._lock = threading.RLock()
        self._collections: Dict[Collection, Dict[str, Any]] = {c: {} for c in Collection}
        self._meta: Dict[str, str] = {}
        self._depth = 0
        self._dirty: Set[Collection] = set()
        self._meta_dirty = False
        self._notify = True
        self._listeners: List[Listener] = []
        self._closed = False
        if snapshot is not None:
            self._load(snapshot)

    @classmethod
    def open(cls, data_file: Path) -> "EntityStore":
        """Load the store from ``data_file``, creating an empty store if absent."""

        path = Path(data_file).expanduser().resolve()
        if not path.exists():
            data_manager.create_store_workbook(path)
        snapshot = data_manager.load_snapshot(path)
        log.info(
            "Opened store '%s' (%d products, %d sales, %d users)",
            path,
            len(snapshot.products),
            len(snapshot.sales),
            len(snapshot.users),
        )
        return cls(path, snapshot)

    @property
    def data_file(self) -> Optional[Path]:
        return self._data_file

    @property
    def lock(self) -> threading.RLock:
        """The store-wide lock serialising every read-decide-write step."""

        return self._lock

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """End the store's lifecycle; further mutations are rejected."""

        with self._lock:
            self._closed = True
            self._listeners.clear()
        log.info("Closed store '%s'", self._data_file)

    def _load(self, snapshot: StoreSnapshot) -> None:
        for collection in Collection:
            self._collections[collection] = {
                record.id: record for record in snapshot.records(collection)
            }
        self._meta = dict(snapshot.meta)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, *, notify: bool = True) -> Iterator["EntityStore"]:
        """Group mutations into one atomic, persisted step.

        Nested transactions join the outermost one. When the outermost block
        exits normally the store is persisted once and listeners are told
        which collections changed; if the block raises, or persisting fails,
        every change made inside it is rolled back and the error propagates.

        Args:
            notify (bool): When ``False`` listeners are not informed of this
                commit. Used when applying state pulled from the remote store.
        """

        changed: Set[Collection] = set()
        with self._lock:
            if self._closed:
                raise InvalidState("Store is closed")
            outermost = self._depth == 0
            if outermost:
                backup = self._copy_state()
                self._dirty = set()
                self._meta_dirty = False
                self._notify = notify
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._restore(backup)
                    log.debug("Rolled back store transaction")
                raise
            self._depth -= 1
            if outermost:
                if self._dirty or self._meta_dirty:
                    try:
                        self._persist()
                    except StorageError:
                        self._restore(backup)
                        raise
                if self._notify:
                    changed = set(self._dirty)
                self._dirty = set()
                self._meta_dirty = False
        if changed:
            self._emit(changed)

    def _copy_state(self) -> tuple[Dict[Collection, Dict[str, Any]], Dict[str, str]]:
        return (
            {collection: dict(records) for collection, records in self._collections.items()},
            dict(self._meta),
        )

    def _restore(self, backup: tuple[Dict[Collection, Dict[str, Any]], Dict[str, str]]) -> None:
        collections, meta = backup
        self._collections = collections
        self._meta = meta
        self._dirty = set()
        self._meta_dirty = False

    def _persist(self) -> None:
        if self._data_file is None:
            return
        try:
            data_manager.save_snapshot(self._build_snapshot(), self._data_file)
        except (OSError, ValueError) as exc:
            log.error("Failed to persist store '%s': %s", self._data_file, exc)
            raise StorageError(f"Unable to write store '{self._data_file}': {exc}") from exc
        log.debug("Persisted store '%s'", self._data_file)

    def _touch(self, collection: Collection, record: Any = None, *, tenant: Optional[str] = None) -> None:
        self._dirty.add(collection)
        now = utc_now_iso()
        self._meta[_modified_key(collection)] = now
        if tenant is None and isinstance(record, Product):
            tenant = tenant_of(record.business_id)
        if tenant is not None:
            self._meta[_modified_key(collection, tenant)] = now

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for commit notifications.

        Returns:
            Callable[[], None]: Function that removes the listener again.
        """

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, changed: Set[Collection]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(set(changed))
            except Exception:  # state is already committed; notification is best-effort
                log.exception("Store listener %r failed", listener)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, collection: Collection, entity_id: str) -> Any:
        """Return the record ``entity_id`` of ``collection``.

        Raises:
            NotFound: If no record carries ``entity_id``.
        """

        with self._lock:
            try:
                return self._collections[collection][entity_id]
            except KeyError as exc:
                log.warning("%s lookup failed for id '%s'", collection.value, entity_id)
                raise NotFound(f"Unknown {collection.value} id: {entity_id}") from exc

    def find(self, collection: Collection, entity_id: str) -> Any:
        with self._lock:
            return self._collections[collection].get(entity_id)

    def list(self, collection: Collection) -> List[Any]:
        """Return a copy of ``collection`` in insertion order."""

        with self._lock:
            return list(self._collections[collection].values())

    @property
    def products(self) -> List[Product]:
        return self.list(Collection.PRODUCTS)

    def products_for(self, business_id: Optional[str]) -> List[Product]:
        """Return the product list of one tenant."""

        tenant = tenant_of(business_id)
        return [product for product in self.products if tenant_of(product.business_id) == tenant]

    @property
    def sales(self) -> List[Sale]:
        return self.list(Collection.SALES)

    @property
    def users(self) -> List[User]:
        return self.list(Collection.USERS)

    @property
    def businesses(self) -> List[Business]:
        return self.list(Collection.BUSINESSES)

    @property
    def audit_logs(self) -> List[AuditLog]:
        return self.list(Collection.AUDIT_LOGS)

    def snapshot(self) -> StoreSnapshot:
        """Return a detached copy of the whole store."""

        with self._lock:
            return self._build_snapshot()

    def _build_snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            products=list(self._collections[Collection.PRODUCTS].values()),
            sales=list(self._collections[Collection.SALES].values()),
            users=list(self._collections[Collection.USERS].values()),
            businesses=list(self._collections[Collection.BUSINESSES].values()),
            audit_logs=list(self._collections[Collection.AUDIT_LOGS].values()),
            meta=dict(self._meta),
        )

    def modified_at(self, collection: Collection, tenant: Optional[str] = None) -> Optional[str]:
        """Return when ``collection`` was last changed locally, if ever.

        With ``tenant`` only changes to that tenant's products count.
        """

        with self._lock:
            return self._meta.get(_modified_key(collection, tenant))

    @property
    def last_sync(self) -> Optional[str]:
        with self._lock:
            return self._meta.get(LAST_SYNC_KEY)

    def mark_synced(self, when: Optional[str] = None) -> None:
        """Record a successful sync time in the persisted metadata."""

        with self.transaction(notify=False):
            self._meta[LAST_SYNC_KEY] = when or utc_now_iso()
            self._meta_dirty = True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, collection: Collection, entity: Any) -> Any:
        """Assign a fresh id to ``entity`` and append it to ``collection``.

        Returns:
            Any: The stored record carrying its generated id.

        Raises:
            ValidationError: If the record is malformed or of the wrong type.
        """

        self._validate(collection, entity)
        with self.transaction():
            records = self._collections[collection]
            new_id = generate_id(ID_PREFIXES[collection])
            while new_id in records:
                new_id = generate_id(ID_PREFIXES[collection])
            stored = replace(entity, id=new_id)
            records[new_id] = stored
            self._touch(collection, stored)
        log.info("Added %s record '%s'", collection.value, stored.id)
        return stored

    def update(self, collection: Collection, entity: Any) -> Any:
        """Replace the record whose id matches ``entity.id``.

        Raises:
            InvalidState: If ``collection`` is append-only.
            NotFound: If no record carries ``entity.id``.
            ValidationError: If the record is malformed.
        """

        self._require_mutable(collection)
        self._validate(collection, entity)
        with self.transaction():
            records = self._collections[collection]
            if entity.id not in records:
                log.warning("Rejected update of unknown %s id '%s'", collection.value, entity.id)
                raise NotFound(f"Unknown {collection.value} id: {entity.id}")
            records[entity.id] = entity
            self._touch(collection, entity)
        log.debug("Updated %s record '%s'", collection.value, entity.id)
        return entity

    def remove(self, collection: Collection, entity_id: str) -> Any:
        """Delete ``entity_id`` from ``collection`` and return the removed record.

        Raises:
            InvalidState: If ``collection`` is append-only.
            NotFound: If no record carries ``entity_id``.
        """

        self._require_mutable(collection)
        with self.transaction():
            records = self._collections[collection]
            if entity_id not in records:
                log.warning("Rejected removal of unknown %s id '%s'", collection.value, entity_id)
                raise NotFound(f"Unknown {collection.value} id: {entity_id}")
            removed = records.pop(entity_id)
            self._touch(collection, removed)
        log.info("Removed %s record '%s'", collection.value, entity_id)
        return removed

    def upsert(self, collection: Collection, entity: Any) -> Any:
        """Insert or replace ``entity`` keeping its own id."""

        self._require_mutable(collection)
        self._validate(collection, entity)
        if not entity.id:
            raise ValidationError("Upserted records must carry an id")
        with self.transaction():
            self._collections[collection][entity.id] = entity
            self._touch(collection, entity)
        return entity

    def merge_records(self, collection: Collection, entities: Iterable[Any], *, notify: bool = False) -> int:
        """Insert the records of ``entities`` whose ids are not yet present.

        Existing records are never touched, which makes this the merge used
        for insert-only collections.

        Returns:
            int: Number of records inserted.
        """

        inserted = 0
        with self.transaction(notify=notify):
            records = self._collections[collection]
            for entity in entities:
                self._validate(collection, entity)
                if entity.id in records:
                    continue
                records[entity.id] = entity
                inserted += 1
            if inserted:
                self._touch(collection)
        return inserted

    def replace_collection(
        self,
        collection: Collection,
        entities: Iterable[Any],
        *,
        tenant: Optional[str] = None,
        modified_at: Optional[str] = None,
        notify: bool = False,
    ) -> None:
        """Replace the contents of a mutable collection.

        Args:
            collection (Collection): Target collection.
            entities (Iterable[Any]): New records, in order.
            tenant (str | None): When given, only that tenant's records are
                replaced and every other tenant's records are kept.
            modified_at (str | None): Timestamp to record as the collection's
                modification time. Defaults to now.
            notify (bool): Whether listeners hear about the change.

        Raises:
            ValidationError: If a record belongs to a tenant other than
                ``tenant``.
        """

        self._require_mutable(collection)
        records = list(entities)
        for entity in records:
            self._validate(collection, entity)
            if tenant is not None and tenant_of(getattr(entity, "business_id", None)) != tenant:
                raise ValidationError(f"{collection.value} record '{entity.id}' does not belong to '{tenant}'")
        with self.transaction(notify=notify):
            kept: Dict[str, Any] = {}
            if tenant is not None:
                kept = {
                    entity_id: entity
                    for entity_id, entity in self._collections[collection].items()
                    if tenant_of(getattr(entity, "business_id", None)) != tenant
                }
            kept.update((entity.id, entity) for entity in records)
            self._collections[collection] = kept
            self._touch(collection, tenant=tenant)
            if modified_at is not None:
                self._meta[_modified_key(collection, tenant)] = modified_at
        log.info("Replaced %s with %d records", collection.value, len(records))

    def adjust_stock(self, product_id: str, delta: int) -> Product:
        """Move ``product_id``'s stock by ``delta`` units and return the result.

        The adjustment is applied as given; callers enforce reservation rules.
        """

        with self.transaction():
            product = self.get(Collection.PRODUCTS, product_id)
            updated = replace(product, stock=product.stock + delta, updated_at=utc_now_iso())
            self._collections[Collection.PRODUCTS][product_id] = updated
            self._touch(Collection.PRODUCTS, updated)
        return updated

    def _require_mutable(self, collection: Collection) -> None:
        if collection in APPEND_ONLY_COLLECTIONS:
            log.warning("Rejected in-place change to append-only %s", collection.value)
            raise InvalidState(f"{collection.value} records are append-only")

    @staticmethod
    def _validate(collection: Collection, entity: Any) -> None:
        expected = RECORD_TYPES[collection]
        if not isinstance(entity, expected):
            raise ValidationError(
                f"{collection.value} expects {expected.__name__}, got {type(entity).__name__}"
            )
        if isinstance(entity, Product):
            if not entity.name.strip():
                raise ValidationError("Product name is required")
            if not isinstance(entity.price, Decimal) or entity.price < 0:
                raise ValidationError("Product price must be a non-negative Decimal")
            if not isinstance(entity.stock, int):
                raise ValidationError("Product stock must be an integer")
        elif isinstance(entity, Sale):
            if not entity.items:
                raise ValidationError("Sales must contain at least one item")
        elif isinstance(entity, (User, Business)):
            if not entity.name.strip():
                raise ValidationError(f"{expected.__name__} name is required")
