"""Remote snapshot store contract, HTTP client, and in-memory reference.

Per tenant the remote store keeps one snapshot document holding
``products``, ``sales``, ``auditLogs`` and ``lastSync``. Products are replaced
as a whole array; sales and audit logs are appended one element at a time.
Login and registration live on the same service.

JSON documents use the camelCase field names of the hosted API; the
``*_to_wire`` and ``*_from_wire`` helpers translate them to and from the
terminal's records.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import requests

from . import log
from .accounts import build_registration, public_user, resolve_login
from .constants import (
    PLATFORM_SNAPSHOT_ID,
    PaymentMethod,
    Role,
    SubscriptionStatus,
    UserStatus,
)
from .data_manager import AuditLog, Business, CartItem, Product, RemoteSettings, Sale, User
from .entity_store import generate_id, utc_now_iso
from .errors import (
    ConflictError,
    CredentialMismatch,
    NotFound,
    RemoteUnavailable,
    ValidationError,
)


@dataclass(frozen=True)
class RemoteSnapshot:
    """One tenant's replicated state as held by the remote store."""

    business_id: str
    products: tuple[Product, ...] = ()
    sales: tuple[Sale, ...] = ()
    audit_logs: tuple[AuditLog, ...] = ()
    last_sync: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful login or registration."""

    user: User
    business: Optional[Business] = None
    snapshot: Optional[RemoteSnapshot] = None


def snapshot_key(user: User) -> str:
    """Return the snapshot id that holds ``user``'s tenant state."""

    if user.role is Role.SUPER_ADMIN:
        return PLATFORM_SNAPSHOT_ID
    return user.business_id or PLATFORM_SNAPSHOT_ID


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------


def _money(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


def _to_decimal(value: Any, default: str = "0") -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(default)


def product_to_wire(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "category": product.category,
        "price": _money(product.price),
        "buyingPrice": _money(product.buying_price),
        "stock": product.stock,
        "openingStock": product.opening_stock,
        "additions": product.additions,
        "imageUrl": product.image_url,
        "createdAt": product.created_at,
        "updatedAt": product.updated_at,
        "businessId": product.business_id,
    }


def product_from_wire(data: Mapping[str, Any]) -> Product:
    buying = data.get("buyingPrice")
    return Product(
        id=str(data["id"]),
        name=str(data.get("name", "")),
        category=str(data.get("category", "")),
        price=_to_decimal(data.get("price")),
        stock=int(data.get("stock", 0)),
        opening_stock=int(data.get("openingStock", data.get("stock", 0))),
        additions=int(data.get("additions", 0)),
        buying_price=None if buying is None else _to_decimal(buying),
        image_url=data.get("imageUrl"),
        created_at=data.get("createdAt") or "",
        updated_at=data.get("updatedAt") or "",
        business_id=data.get("businessId"),
    )


def sale_to_wire(sale: Sale) -> Dict[str, Any]:
    return {
        "id": sale.id,
        "businessId": sale.business_id,
        "date": sale.date,
        "items": [dict(product_to_wire(item.product), quantity=item.quantity) for item in sale.items],
        "totalAmount": _money(sale.total_amount),
        "paymentMethod": sale.payment_method.value,
        "salesPerson": sale.sales_person,
        "customerPhone": sale.customer_phone,
    }


def sale_from_wire(data: Mapping[str, Any]) -> Sale:
    items = tuple(
        CartItem(product=product_from_wire(entry), quantity=int(entry["quantity"]))
        for entry in data.get("items", [])
    )
    return Sale(
        id=str(data["id"]),
        business_id=str(data.get("businessId", "")),
        date=str(data.get("date", "")),
        items=items,
        total_amount=_to_decimal(data.get("totalAmount")),
        payment_method=PaymentMethod(data.get("paymentMethod", PaymentMethod.CASH.value)),
        sales_person=str(data.get("salesPerson", "")),
        customer_phone=data.get("customerPhone") or None,
    )


def user_to_wire(user: User, *, include_credentials: bool = False) -> Dict[str, Any]:
    payload = {
        "id": user.id,
        "name": user.name,
        "role": user.role.value,
        "businessId": user.business_id,
        "avatar": user.avatar,
        "phone": user.phone,
        "status": user.status.value,
        "updatedAt": user.updated_at,
    }
    if include_credentials and user.password:
        payload["password"] = user.password
    return payload


def user_from_wire(data: Mapping[str, Any]) -> User:
    return User(
        id=str(data["id"]),
        name=str(data.get("name", "")),
        role=Role(data["role"]),
        business_id=data.get("businessId") or None,
        avatar=data.get("avatar"),
        phone=data.get("phone"),
        status=UserStatus(data.get("status") or UserStatus.ACTIVE.value),
        password=data.get("password"),
        updated_at=data.get("updatedAt") or "",
    )


def business_to_wire(business: Business) -> Dict[str, Any]:
    return {
        "id": business.id,
        "name": business.name,
        "ownerName": business.owner_name,
        "subscriptionStatus": business.subscription_status.value,
        "subscriptionPlan": business.subscription_plan,
        "paymentStatus": business.payment_status,
        "verificationNote": business.verification_note,
        "mongoDatabase": business.remote_database,
        "mongoCollection": business.remote_collection,
        "mongoConnectionString": business.remote_endpoint,
        "createdAt": business.created_at,
        "updatedAt": business.updated_at,
        "logo": business.logo,
    }


def business_from_wire(data: Mapping[str, Any]) -> Business:
    return Business(
        id=str(data["id"]),
        name=str(data.get("name", "")),
        owner_name=str(data.get("ownerName", "")),
        subscription_status=SubscriptionStatus(
            data.get("subscriptionStatus") or SubscriptionStatus.TRIAL.value
        ),
        subscription_plan=data.get("subscriptionPlan") or "Basic",
        payment_status=data.get("paymentStatus") or "Pending",
        verification_note=data.get("verificationNote"),
        remote_database=data.get("mongoDatabase"),
        remote_collection=data.get("mongoCollection"),
        remote_endpoint=data.get("mongoConnectionString"),
        created_at=data.get("createdAt") or "",
        updated_at=data.get("updatedAt") or "",
        logo=data.get("logo"),
    )


def audit_log_to_wire(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp,
        "userId": entry.user_id,
        "userName": entry.user_name,
        "action": entry.action,
        "details": entry.details,
        "businessId": entry.business_id,
    }


def audit_log_from_wire(data: Mapping[str, Any]) -> AuditLog:
    return AuditLog(
        id=str(data["id"]),
        timestamp=str(data.get("timestamp", "")),
        user_id=str(data.get("userId", "")),
        user_name=str(data.get("userName", "")),
        action=str(data.get("action", "")),
        details=str(data.get("details", "")),
        business_id=data.get("businessId") or None,
    )


def snapshot_from_wire(business_id: str, data: Optional[Mapping[str, Any]]) -> Optional[RemoteSnapshot]:
    if not data:
        return None
    last_sync = data.get("lastSync")
    return RemoteSnapshot(
        business_id=str(data.get("businessId") or business_id),
        products=tuple(product_from_wire(p) for p in data.get("products") or []),
        sales=tuple(sale_from_wire(s) for s in data.get("sales") or []),
        audit_logs=tuple(audit_log_from_wire(entry) for entry in data.get("auditLogs") or []),
        last_sync=str(last_sync) if last_sync else None,
    )


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class RemoteStore(ABC):
    """Operations the sync bridge needs from the remote authority.

    Implementations raise :class:`~barsync.errors.RemoteUnavailable` for
    transport failures and the other :mod:`barsync.errors` types for
    rejected requests.
    """

    @abstractmethod
    def fetch_snapshot(self, business_id: str) -> Optional[RemoteSnapshot]:
        """Return the tenant's snapshot, or ``None`` if it has none yet."""

    @abstractmethod
    def replace_products(self, business_id: str, products: List[Product]) -> None:
        """Replace the tenant's whole product array."""

    @abstractmethod
    def append_sale(self, business_id: str, sale: Sale) -> None:
        """Append one sale to the tenant's snapshot.

        A sale whose id the snapshot already holds should be ignored: the
        bridge resends an append whose response was lost.
        """

    @abstractmethod
    def append_audit_log(self, business_id: str, entry: AuditLog) -> None:
        """Append one audit entry; an id already held should be ignored."""

    @abstractmethod
    def authenticate(self, business_name: Optional[str], username: str, password: str) -> AuthResult:
        """Resolve credentials to a user plus their tenant's latest snapshot."""

    @abstractmethod
    def register(
        self,
        business_name: str,
        owner_name: str,
        password: str,
        plan: Optional[str] = None,
    ) -> AuthResult:
        """Create a tenant and its OWNER account."""


class HttpRemoteStore(RemoteStore):
    """JSON-over-HTTP client for the hosted sync API.

    Every call uses the configured short timeout. HTTP status codes map onto
    the terminal's error taxonomy: 400 validation, 401 credentials, 404 not
    found, 409 conflict, anything else (and every transport error) remote
    unavailable.
    """

    def __init__(self, settings: RemoteSettings, session: Optional[requests.Session] = None) -> None:
        self._base_url = settings.base_url.rstrip("/")
        self._timeout = settings.timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.setdefault("Content-Type", "application/json")

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            log.warning("%s %s failed: %s", method, path, exc)
            raise RemoteUnavailable(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            self._raise_for_status(method, path, response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteUnavailable(f"{method} {path} returned invalid JSON") from exc

    @staticmethod
    def _raise_for_status(method: str, path: str, response: requests.Response) -> None:
        try:
            body = response.json()
            message = body.get("error") if isinstance(body, dict) else None
        except ValueError:
            message = None
        message = message or response.reason or f"HTTP {response.status_code}"
        status = response.status_code
        log.warning("%s %s rejected with %d: %s", method, path, status, message)
        if status == 400:
            raise ValidationError(message)
        if status == 401:
            if "multiple accounts" in message.lower():
                raise ConflictError(message)
            raise CredentialMismatch()
        if status == 404:
            raise NotFound(message)
        if status == 409:
            raise ConflictError(message)
        raise RemoteUnavailable(message)

    def fetch_snapshot(self, business_id: str) -> Optional[RemoteSnapshot]:
        data = self._request("GET", "/api/snapshot", params={"businessId": business_id})
        return snapshot_from_wire(business_id, data)

    def replace_products(self, business_id: str, products: List[Product]) -> None:
        self._request(
            "POST",
            "/api/products/sync",
            json={"businessId": business_id, "products": [product_to_wire(p) for p in products]},
        )

    def append_sale(self, business_id: str, sale: Sale) -> None:
        self._request("POST", "/api/sales", json={"businessId": business_id, "sale": sale_to_wire(sale)})

    def append_audit_log(self, business_id: str, entry: AuditLog) -> None:
        self._request("POST", "/api/auditLogs", json={"businessId": business_id, "log": audit_log_to_wire(entry)})

    def authenticate(self, business_name: Optional[str], username: str, password: str) -> AuthResult:
        data = self._request(
            "POST",
            "/api/auth/login",
            json={"businessName": business_name or "", "username": username, "password": password},
        )
        user = public_user(user_from_wire(data["user"]))
        business = business_from_wire(data["business"]) if data.get("business") else None
        return AuthResult(
            user=user,
            business=business,
            snapshot=snapshot_from_wire(snapshot_key(user), data.get("state")),
        )

    def register(
        self,
        business_name: str,
        owner_name: str,
        password: str,
        plan: Optional[str] = None,
    ) -> AuthResult:
        data = self._request(
            "POST",
            "/api/auth/register",
            json={
                "businessName": business_name,
                "ownerName": owner_name,
                "password": password,
                "plan": plan or "Basic",
            },
        )
        return AuthResult(
            user=public_user(user_from_wire(data["user"])),
            business=business_from_wire(data["business"]),
        )


@dataclass
class _TenantDocument:
    products: List[Product] = field(default_factory=list)
    sales: List[Sale] = field(default_factory=list)
    audit_logs: List[AuditLog] = field(default_factory=list)
    last_sync: Optional[str] = None


class InMemoryRemoteStore(RemoteStore):
    """Process-local implementation of the remote contract.

    It follows the hosted service's rules (case-insensitive lookups, the
    ``admin_node`` snapshot for platform users, credentials stripped from
    responses) and can be switched offline to exercise the terminal's
    degraded mode.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}
        self._businesses: Dict[str, Business] = {}
        self._documents: Dict[str, _TenantDocument] = {}
        self.available = True
        self.calls: List[str] = []

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if not self.available:
            raise RemoteUnavailable(f"Remote store unreachable during {operation}")

    def _document(self, business_id: str) -> _TenantDocument:
        return self._documents.setdefault(business_id, _TenantDocument())

    def seed_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = user
        return user

    def seed_business(self, business: Business) -> Business:
        with self._lock:
            self._businesses[business.id] = business
        return business

    def fetch_snapshot(self, business_id: str) -> Optional[RemoteSnapshot]:
        with self._lock:
            self._enter("fetch_snapshot")
            document = self._documents.get(business_id)
            if document is None:
                return None
            return RemoteSnapshot(
                business_id=business_id,
                products=tuple(document.products),
                sales=tuple(document.sales),
                audit_logs=tuple(document.audit_logs),
                last_sync=document.last_sync,
            )

    def replace_products(self, business_id: str, products: List[Product]) -> None:
        with self._lock:
            self._enter("replace_products")
            document = self._document(business_id)
            document.products = list(products)
            document.last_sync = utc_now_iso()

    def append_sale(self, business_id: str, sale: Sale) -> None:
        with self._lock:
            self._enter("append_sale")
            document = self._document(business_id)
            if any(existing.id == sale.id for existing in document.sales):
                log.info("Remote already holds sale '%s'", sale.id)
                return
            document.sales.append(sale)
            document.last_sync = utc_now_iso()

    def append_audit_log(self, business_id: str, entry: AuditLog) -> None:
        with self._lock:
            self._enter("append_audit_log")
            document = self._document(business_id)
            if any(existing.id == entry.id for existing in document.audit_logs):
                log.info("Remote already holds audit entry '%s'", entry.id)
                return
            document.audit_logs.append(entry)
            document.last_sync = utc_now_iso()

    def authenticate(self, business_name: Optional[str], username: str, password: str) -> AuthResult:
        with self._lock:
            self._enter("authenticate")
            user, business = resolve_login(
                list(self._users.values()),
                list(self._businesses.values()),
                business_name,
                username,
                password,
            )
        snapshot = self.fetch_snapshot(snapshot_key(user))
        return AuthResult(user=public_user(user), business=business, snapshot=snapshot)

    def register(
        self,
        business_name: str,
        owner_name: str,
        password: str,
        plan: Optional[str] = None,
    ) -> AuthResult:
        with self._lock:
            self._enter("register")
            business, owner = build_registration(
                self._businesses.values(), business_name, owner_name, password, plan
            )
            business = replace(business, id=generate_id("bus_"))
            owner = replace(owner, id=generate_id("user_"), business_id=business.id)
            self._businesses[business.id] = business
            self._users[owner.id] = owner
        log.info("Remote registered business '%s' (%s)", business.name, business.id)
        return AuthResult(user=public_user(owner), business=business)
