"""Inventory administration: product creation, restocks, and edits.

These operations sit beside the cart engine. They change ``stock`` directly
(restocks and corrections) and therefore require the MANAGE_INVENTORY
capability; cashiers only ever move stock through cart reservations.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import List, Optional

from . import log
from .audit import AuditRecorder
from .constants import AuditAction, Capability, Collection
from .data_manager import Product, User, tenant_of
from .entity_store import EntityStore, utc_now_iso
from .errors import NotFound, ValidationError
from .permissions import require_capability


LOW_STOCK_THRESHOLD = 10


def add_product(
    store: EntityStore,
    audit: AuditRecorder,
    actor: Optional[User],
    *,
    name: str,
    category: str,
    price: Decimal,
    stock: int,
    buying_price: Optional[Decimal] = None,
    image_url: Optional[str] = None,
) -> Product:
    """Create a product whose opening stock equals its initial stock.

    Args:
        store (EntityStore): Target store.
        audit (AuditRecorder): Recorder for the ``PRODUCT_CREATED`` entry.
        actor (User | None): Acting user; needs MANAGE_INVENTORY.
        name (str): Display name.
        category (str): Menu category such as ``Beer`` or ``Spirit``.
        price (Decimal): Unit sale price.
        stock (int): Units on hand.
        buying_price (Decimal | None): Optional unit cost.
        image_url (str | None): Optional picture.

    Returns:
        Product: The stored product with its generated id.

    Raises:
        ValidationError: If stock is negative or prices are invalid.
    """

    user = require_capability(actor, Capability.MANAGE_INVENTORY)
    if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
        log.error("Stock validation failed: %r", stock)
        raise ValidationError("Stock must be a non-negative integer")
    if buying_price is not None and buying_price < 0:
        raise ValidationError("Buying price must be zero or positive")

    now = utc_now_iso()
    product = Product(
        id="",
        name=(name or "").strip(),
        category=(category or "").strip() or "Others",
        price=price,
        stock=stock,
        opening_stock=stock,
        additions=0,
        buying_price=buying_price,
        image_url=image_url,
        created_at=now,
        updated_at=now,
        business_id=tenant_of(user.business_id),
    )
    with store.transaction():
        stored = store.add(Collection.PRODUCTS, product)
        audit.record(AuditAction.PRODUCT_CREATED, f"{stored.name} (opening stock {stock})", user)
    return stored


def adjust_stock(
    store: EntityStore,
    audit: AuditRecorder,
    actor: Optional[User],
    product_id: str,
    delta: int,
) -> Product:
    """Restock (positive ``delta``) or correct (negative) a product's stock.

    Stock never drops below zero; positive deltas also accumulate into
    ``additions`` so opening stock plus additions stays traceable.
    """

    user = require_capability(actor, Capability.MANAGE_INVENTORY)
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("Stock delta must be an integer")

    with store.transaction():
        product = _tenant_product(store, user, product_id)
        updated = replace(
            product,
            stock=max(0, product.stock + delta),
            additions=product.additions + max(0, delta),
            updated_at=utc_now_iso(),
        )
        store.update(Collection.PRODUCTS, updated)
        audit.record(AuditAction.STOCK_UPDATE, f"{updated.name}: {product.stock} -> {updated.stock}", user)
    log.info("Adjusted stock of '%s' by %d (now %d)", product_id, delta, updated.stock)
    return updated


def update_product(store: EntityStore, audit: AuditRecorder, actor: Optional[User], product: Product) -> Product:
    """Replace a product's details; opening stock and creation time are kept."""

    user = require_capability(actor, Capability.MANAGE_INVENTORY)
    with store.transaction():
        current = _tenant_product(store, user, product.id)
        updated = replace(
            product,
            business_id=current.business_id,
            opening_stock=current.opening_stock,
            created_at=current.created_at,
            updated_at=utc_now_iso(),
        )
        store.update(Collection.PRODUCTS, updated)
        audit.record(AuditAction.STOCK_UPDATE, updated.name, user)
    return updated


def low_stock(
    store: EntityStore,
    threshold: int = LOW_STOCK_THRESHOLD,
    *,
    business_id: Optional[str] = None,
) -> List[Product]:
    """List products under ``threshold``; with ``business_id`` only that tenant's."""

    products = store.products if business_id is None else store.products_for(business_id)
    return [product for product in products if product.stock < threshold]


def _tenant_product(store: EntityStore, user: User, product_id: str) -> Product:
    product: Product = store.get(Collection.PRODUCTS, product_id)
    if tenant_of(product.business_id) != tenant_of(user.business_id):
        log.warning("User '%s' cannot manage product '%s' of another tenant", user.id, product_id)
        raise NotFound(f"Unknown {Collection.PRODUCTS.value} id: {product_id}")
    return product
