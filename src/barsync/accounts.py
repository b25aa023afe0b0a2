"""Tenant registration, login resolution, and staff management.

Credentials: new passwords are stored as bcrypt hashes. Records carried over
from older stores may still hold plaintext passwords; those are compared in
constant time for parity until the user next changes their password.
:func:`public_user` strips the credential before a record leaves the
terminal or is returned from a login.
"""

from __future__ import annotations

import hmac
from dataclasses import replace
from typing import Iterable, List, Optional, Sequence, Tuple

import bcrypt

from . import log
from .audit import AuditRecorder
from .constants import (
    PLATFORM_LOGIN_NAME,
    AuditAction,
    Capability,
    Collection,
    Role,
    SubscriptionStatus,
    UserStatus,
)
from .data_manager import Business, User
from .entity_store import EntityStore, utc_now_iso
from .errors import (
    ConflictError,
    CredentialMismatch,
    InvalidState,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from .permissions import require_capability


BCRYPT_ROUNDS = 12
_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

AMBIGUOUS_LOGIN_MESSAGE = "Multiple accounts found. Please specify business."


def hash_password(password: str) -> str:
    """Hash ``password`` with bcrypt and return the encoded hash."""

    if not password:
        raise ValidationError("Password is required")
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def is_hashed(stored: Optional[str]) -> bool:
    return bool(stored) and stored.startswith(_BCRYPT_PREFIXES)


def verify_password(stored: Optional[str], candidate: str) -> bool:
    """Check ``candidate`` against a stored bcrypt hash or legacy plaintext."""

    if not stored:
        return False
    if is_hashed(stored):
        return bcrypt.checkpw(candidate.encode("utf-8"), stored.encode("utf-8"))
    return hmac.compare_digest(stored.encode("utf-8"), candidate.encode("utf-8"))


def public_user(user: User) -> User:
    """Return ``user`` without its credential."""

    return replace(user, password=None)


def is_platform_login(business_name: Optional[str]) -> bool:
    name = (business_name or "").strip()
    return not name or name.lower() == PLATFORM_LOGIN_NAME


def _same_name(left: str, right: str) -> bool:
    return left.strip().casefold() == right.strip().casefold()


def find_business_by_name(businesses: Iterable[Business], name: str) -> Optional[Business]:
    for business in businesses:
        if _same_name(business.name, name):
            return business
    return None


def resolve_login(
    users: Sequence[User],
    businesses: Sequence[Business],
    business_name: Optional[str],
    username: str,
    password: str,
) -> Tuple[User, Optional[Business]]:
    """Resolve a login attempt to exactly one user.

    A blank business name, or ``"platform"``, selects a platform login: a
    SUPER_ADMIN with that name wins; otherwise the name must belong to exactly
    one user across all tenants. Any other business name is looked up
    case-insensitively and the user is searched inside that tenant only.

    Args:
        users (Sequence[User]): Candidate accounts, credentials included.
        businesses (Sequence[Business]): Known tenants.
        business_name (str | None): Workplace typed by the user.
        username (str): Display name typed by the user.
        password (str): Password typed by the user.

    Returns:
        tuple[User, Business | None]: The matched user (credential kept) and
            their business, if any.

    Raises:
        NotFound: If a named business does not exist.
        ConflictError: If a platform login name matches several accounts.
        CredentialMismatch: For unknown users, wrong passwords, or inactive
            accounts. The message never says which.
    """

    username = (username or "").strip()
    password = (password or "").strip()
    business: Optional[Business] = None
    user: Optional[User] = None

    if is_platform_login(business_name):
        user = next(
            (u for u in users if u.role is Role.SUPER_ADMIN and _same_name(u.name, username)),
            None,
        )
        if user is None:
            candidates = [u for u in users if _same_name(u.name, username)]
            if len(candidates) > 1:
                log.warning("Ambiguous platform login for '%s' (%d accounts)", username, len(candidates))
                raise ConflictError(AMBIGUOUS_LOGIN_MESSAGE)
            if candidates:
                user = candidates[0]
                if user.business_id:
                    business = next((b for b in businesses if b.id == user.business_id), None)
    else:
        business = find_business_by_name(businesses, business_name or "")
        if business is None:
            log.warning("Login failed: business '%s' not found", business_name)
            raise NotFound("Business not found")
        user = next(
            (u for u in users if u.business_id == business.id and _same_name(u.name, username)),
            None,
        )

    if user is None or not verify_password(user.password, password):
        log.warning("Login failed for '%s'", username)
        raise CredentialMismatch()
    if user.status is UserStatus.INACTIVE:
        log.warning("Login refused for inactive user '%s'", user.id)
        raise CredentialMismatch()

    log.info("Resolved login for user '%s' (%s)", user.id, user.role.value)
    return user, business


def build_registration(
    existing: Iterable[Business],
    business_name: str,
    owner_name: str,
    password: str,
    plan: Optional[str] = None,
) -> Tuple[Business, User]:
    """Build a new tenant and its OWNER account without storing them.

    Raises:
        ValidationError: If a required detail is missing.
        ConflictError: If a business with the same name (case-insensitive)
            already exists.
    """

    business_name = (business_name or "").strip()
    owner_name = (owner_name or "").strip()
    password = (password or "").strip()
    if not business_name or not owner_name or not password:
        raise ValidationError("Missing required registration details")
    if find_business_by_name(existing, business_name) is not None:
        log.warning("Registration rejected: '%s' already exists", business_name)
        raise ConflictError("Business name already registered")

    now = utc_now_iso()
    business = Business(
        id="",
        name=business_name,
        owner_name=owner_name,
        subscription_status=SubscriptionStatus.TRIAL,
        subscription_plan=plan or "Basic",
        payment_status="Pending",
        created_at=now,
        updated_at=now,
    )
    owner = User(
        id="",
        name=owner_name,
        role=Role.OWNER,
        avatar=f"https://api.dicebear.com/7.x/avataaars/svg?seed={owner_name}",
        status=UserStatus.ACTIVE,
        password=hash_password(password),
        updated_at=now,
    )
    return business, owner


def register_business(
    store: EntityStore,
    audit: AuditRecorder,
    business_name: str,
    owner_name: str,
    password: str,
    plan: Optional[str] = None,
    *,
    actor: Optional[User] = None,
) -> Tuple[Business, User]:
    """Create a tenant and its OWNER account in the local store.

    When ``actor`` is given it must be a platform user (onboarding from the
    platform hub); self-registration passes no actor and the new owner is
    recorded as the actor of the audit entry.

    Returns:
        tuple[Business, User]: The stored business and owner (credential
            stripped).
    """

    if actor is not None:
        require_capability(actor, Capability.MANAGE_PLATFORM)
    business, owner = build_registration(store.businesses, business_name, owner_name, password, plan)
    with store.transaction():
        stored_business = store.add(Collection.BUSINESSES, business)
        stored_owner = store.add(Collection.USERS, replace(owner, business_id=stored_business.id))
        audit.record(
            AuditAction.PARTNER_CREATED,
            f"Onboarded business: {stored_business.name}",
            actor or stored_owner,
        )
    log.info("Registered business '%s' (%s)", stored_business.name, stored_business.id)
    return stored_business, public_user(stored_owner)


def update_business(store: EntityStore, audit: AuditRecorder, actor: Optional[User], business: Business) -> Business:
    """Replace a business record (platform hub: subscription, verification)."""

    user = require_capability(actor, Capability.MANAGE_PLATFORM)
    current: Business = store.get(Collection.BUSINESSES, business.id)
    updated = replace(business, created_at=current.created_at, updated_at=utc_now_iso())
    with store.transaction():
        store.update(Collection.BUSINESSES, updated)
        audit.record(
            AuditAction.BUSINESS_UPDATE,
            f"{updated.name}: subscription {updated.subscription_status.value}",
            user,
        )
    return updated


def staff_of(store: EntityStore, actor: Optional[User]) -> List[User]:
    """Return the actor's colleagues without credentials."""

    user = require_capability(actor, Capability.MANAGE_STAFF)
    return [public_user(u) for u in store.users if u.business_id == user.business_id]


def add_user(
    store: EntityStore,
    audit: AuditRecorder,
    actor: Optional[User],
    name: str,
    role: Role,
    password: str,
    *,
    phone: Optional[str] = None,
    avatar: Optional[str] = None,
) -> User:
    """Create a staff account inside the actor's business.

    Raises:
        PermissionDenied: If the actor cannot manage staff or tries to create
            a platform account.
        ValidationError: If the name or password is missing.
    """

    manager = require_capability(actor, Capability.MANAGE_STAFF)
    if role is Role.SUPER_ADMIN:
        raise PermissionDenied("Platform accounts cannot be created by tenants")
    if not (name or "").strip():
        raise ValidationError("User name is required")
    user = User(
        id="",
        name=name.strip(),
        role=role,
        business_id=manager.business_id,
        avatar=avatar,
        phone=phone,
        status=UserStatus.ACTIVE,
        password=hash_password(password),
        updated_at=utc_now_iso(),
    )
    with store.transaction():
        stored = store.add(Collection.USERS, user)
        audit.record(AuditAction.USER_CREATED, f"Added {stored.role.value} {stored.name}", manager)
    return public_user(stored)


def update_user(store: EntityStore, audit: AuditRecorder, actor: Optional[User], user: User) -> User:
    """Replace a colleague's record.

    A ``password`` of ``None`` keeps the stored credential; any other value is
    hashed before it is stored. The business assignment cannot be changed.
    """

    manager = require_capability(actor, Capability.MANAGE_STAFF)
    current = _colleague(store, manager, user.id)
    updated = _merge_credentials(current, replace(user, business_id=current.business_id))
    with store.transaction():
        store.update(Collection.USERS, updated)
        audit.record(AuditAction.USER_UPDATED, f"Updated {updated.name}", manager)
    return public_user(updated)


def remove_user(store: EntityStore, audit: AuditRecorder, actor: Optional[User], user_id: str) -> User:
    """Delete a colleague's account. Owners cannot be removed."""

    manager = require_capability(actor, Capability.MANAGE_STAFF)
    current = _colleague(store, manager, user_id)
    if current.role is Role.OWNER:
        raise InvalidState("The business owner cannot be removed")
    if current.id == manager.id:
        raise InvalidState("Users cannot remove themselves")
    with store.transaction():
        store.remove(Collection.USERS, user_id)
        audit.record(AuditAction.USER_REMOVED, f"Removed {current.name}", manager)
    return public_user(current)


def update_profile(store: EntityStore, audit: AuditRecorder, actor: Optional[User], profile: User) -> User:
    """Let a user edit their own name, avatar, phone, or password.

    Role, status, and business are taken from the stored record.
    """

    if actor is None:
        raise InvalidState("An authenticated user is required")
    if profile.id != actor.id:
        raise PermissionDenied("Users may only edit their own profile")
    current: User = store.get(Collection.USERS, actor.id)
    updated = _merge_credentials(
        current,
        replace(
            current,
            name=profile.name,
            avatar=profile.avatar,
            phone=profile.phone,
            password=profile.password,
        ),
    )
    with store.transaction():
        store.update(Collection.USERS, updated)
        audit.record(AuditAction.PROFILE_UPDATE, "Updated personal profile details", updated)
    return public_user(updated)


def _colleague(store: EntityStore, manager: User, user_id: str) -> User:
    current: User = store.get(Collection.USERS, user_id)
    if current.business_id != manager.business_id:
        log.warning("User '%s' tried to manage '%s' of another tenant", manager.id, user_id)
        raise NotFound(f"Unknown Users id: {user_id}")
    return current


def _merge_credentials(current: User, candidate: User) -> User:
    if candidate.password is None:
        password = current.password
    elif candidate.password == current.password or is_hashed(candidate.password):
        password = candidate.password
    else:
        password = hash_password(candidate.password)
    return replace(candidate, password=password, updated_at=utc_now_iso())
