"""Background replication of the local store to the remote snapshot store.

The local store is always authoritative for the terminal. The bridge keeps
the remote copy of the logged-in tenant converging toward it:

* every committed store transaction schedules a push on a single worker
  thread; a push that has been superseded by a newer request is abandoned;
* a push replaces the remote product array with the tenant's own products
  and appends each of the tenant's sales and audit entries the remote has
  not acknowledged yet, so the persisted store is itself the pending queue
  and nothing is lost while offline;
* at login (and on the first push after an offline start) the remote
  snapshot is pulled: the tenant's products follow whole-list
  last-write-wins, less the units the open cart holds; sales and audit
  entries are unioned by id.

Transport failures are retried with exponential backoff, then downgrade the
bridge to ``OFFLINE``. They are reported through :meth:`SyncBridge.status`
and never reach cart or checkout callers.

Known limitations: product reconciliation is lossy. Concurrent product edits
on two terminals resolve to whichever side synced last, per tenant. An
append whose response is lost to a timeout is sent again; a remote that does
not ignore ids it already holds then stores the record twice.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Callable, List, Optional, Set, TypeVar

from . import log
from .constants import Collection, ConnectivityState
from .data_manager import RemoteSettings, User, tenant_of
from .entity_store import EntityStore
from .errors import BarSyncError, RemoteUnavailable
from .remote import AuthResult, RemoteSnapshot, RemoteStore, snapshot_key


T = TypeVar("T")


@dataclass(frozen=True)
class SyncStatus:
    """Observable replication state for status bars and the CLI."""

    state: ConnectivityState
    last_sync: Optional[str]
    last_error: Optional[str]
    pending: bool


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or ``attempts`` transport failures occur.

    Only :class:`RemoteUnavailable` is retried; a rejected request (bad
    credentials, validation, conflict) will not succeed on a second try and
    propagates immediately. The delay doubles after every failed attempt.
    """

    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except RemoteUnavailable as exc:
            if attempt == attempts - 1:
                raise
            delay = backoff_seconds * (2 ** attempt)
            log.warning(
                "Remote call failed (attempt %d/%d): %s; retrying in %.2fs",
                attempt + 1,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        log.warning("Ignoring unparseable timestamp '%s'", value)
        return None
    # Timestamps without an offset are UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def remote_is_newer(remote_last_sync: Optional[str], local_modified_at: Optional[str]) -> bool:
    """Decide the product collection's last-write-wins comparison.

    A remote without a sync time never wins; a local collection that was
    never modified always loses.
    """

    remote_time = _parse_time(remote_last_sync)
    if remote_time is None:
        return False
    local_time = _parse_time(local_modified_at)
    if local_time is None:
        return True
    return remote_time >= local_time


class SyncBridge:
    """Replicates one tenant's state between the store and a remote store.

    Args:
        store (EntityStore): The terminal's authoritative store.
        remote (RemoteStore): Remote authority to replicate to.
        settings (RemoteSettings | None): Retry and backoff configuration.
        sleep (Callable[[float], None]): Delay function used between retries.
        reserved (Callable[[str], int] | None): Units of a product held by the
            terminal's cart. Pulled remote stock is reduced by them.
    """

    def __init__(
        self,
        store: EntityStore,
        remote: RemoteStore,
        settings: Optional[RemoteSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        reserved: Optional[Callable[[str], int]] = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._settings = settings or RemoteSettings(base_url="")
        self._sleep = sleep
        self._reserved = reserved or (lambda product_id: 0)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="barsync-sync")
        self._state = ConnectivityState.OFFLINE
        self._user: Optional[User] = None
        self._acked_sales: Optional[Set[str]] = None
        self._acked_logs: Optional[Set[str]] = None
        self._generation = 0
        self._futures: List[Future] = []
        self._pending = False
        self._last_error: Optional[str] = None
        self._closed = False
        self._unsubscribe = store.subscribe(self._on_commit)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectivityState:
        with self._lock:
            return self._state

    @property
    def user(self) -> Optional[User]:
        with self._lock:
            return self._user

    def status(self) -> SyncStatus:
        # Read the store first: store commits call back into the bridge while
        # holding the store lock.
        last_sync = self._store.last_sync
        with self._lock:
            return SyncStatus(
                state=self._state,
                last_sync=last_sync,
                last_error=self._last_error,
                pending=self._pending,
            )

    def set_connectivity(self, online: bool) -> None:
        """Switch between ONLINE and OFFLINE; going online triggers a push."""

        target = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        with self._lock:
            previous = self._state
            self._state = target
            bound = self._user is not None
        if previous is not target:
            log.info("Sync bridge switched %s -> %s", previous.value, target.value)
        if target is ConnectivityState.ONLINE and previous is ConnectivityState.OFFLINE and bound:
            self.request_push()

    def _go_offline(self, exc: BaseException) -> None:
        with self._lock:
            self._state = ConnectivityState.OFFLINE
            self._last_error = str(exc)
        log.warning("Sync bridge is OFFLINE: %s", exc)

    def _call(self, func: Callable[[], T]) -> T:
        return run_with_retry(
            func,
            attempts=self._settings.max_retries,
            backoff_seconds=self._settings.backoff_seconds,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Login and binding
    # ------------------------------------------------------------------

    def login(self, business_name: Optional[str], username: str, password: str) -> AuthResult:
        """Authenticate against the remote store and pull the tenant snapshot.

        Returns:
            AuthResult: The authenticated user (credential stripped), their
                business, and the snapshot that was applied.

        Raises:
            RemoteUnavailable: If the remote cannot be reached. The bridge is
                OFFLINE afterwards and the local store is untouched.
            CredentialMismatch | ConflictError | NotFound: If the remote
                rejects the credentials.
        """

        try:
            result = self._call(lambda: self._remote.authenticate(business_name, username, password))
        except RemoteUnavailable as exc:
            self._go_offline(exc)
            raise

        with self._lock:
            self._generation += 1
            self._user = result.user
            self._state = ConnectivityState.ONLINE
            self._last_error = None
        self._apply_snapshot(result.snapshot, result.user)
        self._store.mark_synced()
        log.info("Sync bridge bound to '%s' for user '%s'", snapshot_key(result.user), result.user.id)
        self.request_push()
        return result

    def bind(self, user: User) -> None:
        """Attach a user authenticated locally while the remote was unreachable.

        The remote snapshot is pulled on the first successful push.
        """

        with self._lock:
            self._generation += 1
            self._user = user
            self._acked_sales = None
            self._acked_logs = None
            self._pending = True
        log.info("Sync bridge bound offline to user '%s'", user.id)

    def register(
        self,
        business_name: str,
        owner_name: str,
        password: str,
        plan: Optional[str] = None,
    ) -> AuthResult:
        """Register a new tenant with the remote store.

        Raises:
            RemoteUnavailable: If the remote cannot be reached; the bridge is
                OFFLINE afterwards.
        """

        try:
            return self._call(lambda: self._remote.register(business_name, owner_name, password, plan))
        except RemoteUnavailable as exc:
            self._go_offline(exc)
            raise

    def unbind(self) -> None:
        """Detach the current user; queued pushes are abandoned."""

        with self._lock:
            self._generation += 1
            self._user = None
            self._acked_sales = None
            self._acked_logs = None

    def _apply_snapshot(self, snapshot: Optional[RemoteSnapshot], user: User) -> None:
        if snapshot is None:
            self._acked_sales = set()
            self._acked_logs = set()
            log.info("Remote holds no snapshot for this tenant yet")
            return

        tenant = tenant_of(user.business_id)
        with self._store.transaction(notify=False):
            local_modified = self._store.modified_at(Collection.PRODUCTS, tenant)
            if remote_is_newer(snapshot.last_sync, local_modified):
                # Remote stock does not know about units held in this cart.
                products = [
                    replace(product, business_id=tenant, stock=product.stock - self._reserved(product.id))
                    for product in snapshot.products
                ]
                self._store.replace_collection(
                    Collection.PRODUCTS,
                    products,
                    tenant=tenant,
                    modified_at=snapshot.last_sync,
                )
                log.info("Applied %d remote products (remote is newer)", len(products))
            else:
                log.info("Kept local products (modified %s after remote %s)", local_modified, snapshot.last_sync)
            sales = self._store.merge_records(Collection.SALES, snapshot.sales)
            logs = self._store.merge_records(Collection.AUDIT_LOGS, snapshot.audit_logs)
        log.info("Merged %d remote sales and %d remote audit entries", sales, logs)

        self._acked_sales = {sale.id for sale in snapshot.sales}
        self._acked_logs = {entry.id for entry in snapshot.audit_logs}

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def _on_commit(self, changed: Set[Collection]) -> None:
        with self._lock:
            if self._user is None:
                return
            if self._state is ConnectivityState.OFFLINE:
                self._pending = True
                log.debug("Queued %s while OFFLINE", sorted(c.value for c in changed))
                return
        self.request_push()

    def request_push(self) -> Optional[Future]:
        """Schedule a push of the current state and return its future.

        Any push still waiting on the worker becomes stale and is abandoned
        when it starts.
        """

        with self._lock:
            if self._closed:
                return None
            self._generation += 1
            generation = self._generation
            self._pending = True
            future = self._executor.submit(self._push, generation)
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)
        return future

    def _superseded(self, generation: int) -> bool:
        with self._lock:
            return generation != self._generation

    def _push(self, generation: int) -> bool:
        with self._lock:
            user = self._user
            online = self._state is ConnectivityState.ONLINE
        if self._superseded(generation):
            log.debug("Abandoned superseded push #%d", generation)
            return False
        if user is None or not online:
            return False

        try:
            completed = self._push_state(user, generation)
        except RemoteUnavailable as exc:
            self._go_offline(exc)
            return False
        except BarSyncError as exc:
            with self._lock:
                self._last_error = str(exc)
            log.error("Remote rejected push #%d: %s", generation, exc)
            return False

        if not completed:
            log.debug("Push #%d stopped early for a newer request", generation)
            return False
        with self._lock:
            if generation == self._generation:
                self._pending = False
                self._last_error = None
        self._store.mark_synced()
        log.info("Push #%d completed", generation)
        return True

    def _push_state(self, user: User, generation: int) -> bool:
        key = snapshot_key(user)
        tenant = tenant_of(user.business_id)
        if self._acked_sales is None or self._acked_logs is None:
            self._apply_snapshot(self._call(lambda: self._remote.fetch_snapshot(key)), user)

        products = self._store.products_for(tenant)
        self._call(lambda: self._remote.replace_products(key, products))

        for sale in self._store.sales:
            if sale.id in self._acked_sales or tenant_of(sale.business_id) != tenant:
                continue
            if self._superseded(generation):
                return False
            self._call(lambda sale=sale: self._remote.append_sale(key, sale))
            self._acked_sales.add(sale.id)

        for entry in self._store.audit_logs:
            if entry.id in self._acked_logs or tenant_of(entry.business_id) != tenant:
                continue
            if self._superseded(generation):
                return False
            self._call(lambda entry=entry: self._remote.append_audit_log(key, entry))
            self._acked_logs.add(entry.id)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for scheduled pushes; return ``True`` when nothing is pending."""

        with self._lock:
            futures = list(self._futures)
        _, not_done = wait(futures, timeout=timeout)
        with self._lock:
            return not not_done and not self._pending

    def shutdown(self, wait_for_pending: bool = True) -> None:
        """Stop listening to the store and stop the worker thread."""

        self._unsubscribe()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if not wait_for_pending:
                self._generation += 1
        self._executor.shutdown(wait=wait_for_pending, cancel_futures=not wait_for_pending)
        log.info("Sync bridge shut down (last sync %s)", self._store.last_sync)
