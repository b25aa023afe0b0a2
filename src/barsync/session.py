"""Terminal session: one explicitly owned store plus the services around it.

A :class:`TerminalSession` is what a front end (the CLI, a UI shell, a test)
holds. It wires the cart engine, checkout processor, audit recorder and, when
a remote store is configured, the sync bridge around a single
:class:`~barsync.entity_store.EntityStore`, and tracks who is logged in.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Callable, List, Optional, Tuple, Union

from . import accounts, log
from .accounts import hash_password, public_user, resolve_login, verify_password
from .audit import AuditRecorder
from .cart import CartEngine
from .checkout import CheckoutProcessor, sales_for_business
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    AuditAction,
    Capability,
    Collection,
    ConnectivityState,
    PaymentMethod,
)
from .data_manager import (
    AuditLog,
    Business,
    CartItem,
    ConfigSettings,
    Product,
    RemoteSettings,
    Sale,
    User,
    tenant_of,
)
from .entity_store import EntityStore
from .errors import InvalidState, RemoteUnavailable
from .permissions import require_actor, require_capability
from .remote import HttpRemoteStore, RemoteStore
from .sync_bridge import SyncBridge, SyncStatus


def ensure_schema_version(settings: ConfigSettings) -> None:
    """Validate that the configured store schema matches this release.

    Raises:
        RuntimeError: If ``SchemaVersion`` differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, settings.schema_version)
        )
    log.debug("Schema version '%s' validated", settings.schema_version)


class TerminalSession:
    """Point-of-sale session bound to one store.

    Args:
        store (EntityStore): The session's authoritative store.
        remote (RemoteStore | None): Remote authority; without one the
            terminal runs purely offline.
        remote_settings (RemoteSettings | None): Timeouts and retry policy
            for the sync bridge.
        sleep (Callable[[float], None]): Delay function used between sync
            retries.
    """

    def __init__(
        self,
        store: EntityStore,
        remote: Optional[RemoteStore] = None,
        remote_settings: Optional[RemoteSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.audit = AuditRecorder(store)
        self.cart = CartEngine(store)
        self.checkout_processor = CheckoutProcessor(store, self.cart, self.audit)
        self.bridge: Optional[SyncBridge] = None
        if remote is not None:
            self.bridge = SyncBridge(store, remote, remote_settings, sleep=sleep, reserved=self.cart.quantity_of)
        self._remote_settings = remote_settings
        self._user: Optional[User] = None
        self._business: Optional[Business] = None

    @classmethod
    def from_settings(cls, settings: ConfigSettings, remote: Optional[RemoteStore] = None) -> "TerminalSession":
        """Open the configured store and, if ``[Remote]`` is set, an HTTP remote."""

        ensure_schema_version(settings)
        store = EntityStore.open(settings.data_file)
        if remote is None and settings.remote is not None:
            remote = HttpRemoteStore(settings.remote)
        log.info("Starting terminal '%s'", settings.terminal_name)
        return cls(store, remote, settings.remote)

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def business(self) -> Optional[Business]:
        return self._business

    def close(self) -> None:
        """Log out if needed, stop the sync worker, and close the store."""

        if self._user is not None:
            self.logout()
        if self.bridge is not None:
            self.bridge.shutdown()
        self.store.close()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, business_name: Optional[str], username: str, password: str) -> User:
        """Authenticate a user for this terminal.

        The remote store is asked first so the tenant's latest snapshot is
        pulled. When it cannot be reached, the accounts cached in the local
        store are used instead and the bridge stays OFFLINE until
        connectivity returns.

        Returns:
            User: The logged-in user without credentials.

        Raises:
            InvalidState: If someone is already logged in.
            CredentialMismatch | ConflictError | NotFound: If the credentials
                cannot be resolved to exactly one active account.
        """

        if self._user is not None:
            raise InvalidState(f"'{self._user.name}' is already logged in")

        user: Optional[User] = None
        business: Optional[Business] = None
        if self.bridge is not None:
            try:
                result = self.bridge.login(business_name, username, password)
            except RemoteUnavailable:
                log.warning("Remote store unreachable; using local accounts")
            else:
                user, business = result.user, result.business
                self._cache_account(user, business, password)

        if user is None:
            stored, business = resolve_login(
                self.store.users, self.store.businesses, business_name, username, password
            )
            user = public_user(stored)
            if self.bridge is not None:
                self.bridge.bind(user)

        self._user = user
        self._business = business
        self.audit.record(AuditAction.LOGIN, "User accessed terminal", user)
        log.info("User '%s' logged in", user.id)
        return user

    def _cache_account(self, user: User, business: Optional[Business], password: str) -> None:
        password = password.strip()
        existing: Optional[User] = self.store.find(Collection.USERS, user.id)
        if existing is not None and verify_password(existing.password, password):
            credential = existing.password
        else:
            credential = hash_password(password)
        with self.store.transaction(notify=False):
            if business is not None:
                self.store.upsert(Collection.BUSINESSES, business)
            self.store.upsert(Collection.USERS, replace(user, password=credential))

    def register_business(
        self,
        business_name: str,
        owner_name: str,
        password: str,
        plan: Optional[str] = None,
    ) -> Tuple[Business, User]:
        """Onboard a tenant and its OWNER account.

        With a remote store the tenant is created there (so the name is
        checked platform-wide) and cached locally; otherwise it is created in
        the local store only. A logged-in user must be a platform user.

        Returns:
            tuple[Business, User]: The new business and owner (no credential).
        """

        if self._user is not None:
            require_capability(self._user, Capability.MANAGE_PLATFORM)
        if self.bridge is None:
            return accounts.register_business(
                self.store, self.audit, business_name, owner_name, password, plan, actor=self._user
            )

        result = self.bridge.register(business_name, owner_name, password, plan)
        owner = result.user
        self._cache_account(owner, result.business, password)
        self.audit.record(
            AuditAction.PARTNER_CREATED,
            f"Onboarded business: {result.business.name}",
            self._user or owner,
        )
        return result.business, owner

    def logout(self) -> None:
        """End the session: release the cart, audit, and detach the bridge."""

        user = require_actor(self._user)
        released = self.cart.clear()
        if released:
            log.info("Released %d reserved units on logout", released)
        self.audit.record(AuditAction.LOGOUT, "User left terminal", user)
        if self.bridge is not None:
            self.bridge.flush(timeout=self._flush_timeout())
            self.bridge.unbind()
        self._user = None
        self._business = None
        log.info("User '%s' logged out", user.id)

    def _flush_timeout(self) -> float:
        settings = self._remote_settings or RemoteSettings(base_url="")
        return settings.timeout_seconds * max(1, settings.max_retries)

    # ------------------------------------------------------------------
    # Cart and checkout
    # ------------------------------------------------------------------

    def add_to_cart(self, product_id: str) -> CartItem:
        user = require_capability(self._user, Capability.SELL)
        return self.cart.add_item(product_id, tenant=tenant_of(user.business_id))

    def set_quantity(self, product_id: str, delta: int) -> CartItem:
        require_capability(self._user, Capability.SELL)
        return self.cart.set_quantity(product_id, delta)

    def remove_from_cart(self, product_id: str) -> int:
        require_capability(self._user, Capability.SELL)
        return self.cart.remove_item(product_id)

    def clear_cart(self) -> int:
        require_capability(self._user, Capability.SELL)
        return self.cart.clear()

    def checkout(
        self,
        payment_method: Union[PaymentMethod, str],
        customer_phone: Optional[str] = None,
    ) -> Sale:
        user = require_capability(self._user, Capability.SELL)
        return self.checkout_processor.checkout(user, payment_method, customer_phone)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def status(self) -> SyncStatus:
        if self.bridge is None:
            return SyncStatus(
                state=ConnectivityState.OFFLINE,
                last_sync=self.store.last_sync,
                last_error=None,
                pending=False,
            )
        return self.bridge.status()

    def set_connectivity(self, online: bool) -> None:
        if self.bridge is None:
            log.debug("Ignoring connectivity change: no remote store configured")
            return
        self.bridge.set_connectivity(online)

    def sync_now(self, timeout: Optional[float] = None) -> SyncStatus:
        """Push the tenant's state immediately and wait for the outcome.

        Raises:
            InvalidState: If nobody is logged in.
            RemoteUnavailable: If no remote is configured or the terminal is
                OFFLINE.
        """

        user = require_actor(self._user)
        if self.bridge is None:
            raise RemoteUnavailable("No remote store is configured")
        if self.bridge.state is ConnectivityState.OFFLINE:
            raise RemoteUnavailable("Terminal is currently offline")

        if timeout is None:
            timeout = self._flush_timeout()
        self.bridge.request_push()
        if self.bridge.flush(timeout):
            self.audit.record(AuditAction.CLOUD_SYNC, "Data push to remote store successful", user)
            self.bridge.flush(timeout)
        return self.bridge.status()

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def visible_audit_logs(self) -> List[AuditLog]:
        user = require_capability(self._user, Capability.VIEW_AUDIT_TRAIL)
        return self.audit.visible_logs(user)

    def visible_sales(self) -> List[Sale]:
        user = require_capability(self._user, Capability.VIEW_REPORTS)
        return sales_for_business(self.store, user.business_id)

    def visible_products(self) -> List[Product]:
        """Return the logged-in user's own product list."""

        user = require_actor(self._user)
        return self.store.products_for(user.business_id)
