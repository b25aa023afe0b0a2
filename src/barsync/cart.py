"""Cart engine: the in-progress transaction and its stock reservations.

Stock is reserved the moment a unit enters the cart. For every product the
engine keeps ``stock_remaining + quantity_in_cart == stock_when_first_added``
true across add/adjust/remove, which is why quantity clamps move stock by the
delta actually applied rather than the delta requested.

Each operation reads stock, decides, and writes stock plus cart inside a
single :meth:`EntityStore.transaction`, the one mutual exclusion boundary
that keeps concurrent callers from losing updates.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple

from . import log
from .constants import Collection
from .data_manager import CartItem, Product, tenant_of
from .entity_store import EntityStore
from .errors import NotFound, OutOfStock, ValidationError


class CartEngine:
    """Active cart bound to one :class:`EntityStore`."""

    def __init__(self, store: EntityStore) -> None:
        self._store = store
        self._items: Dict[str, CartItem] = {}

    @property
    def items(self) -> Tuple[CartItem, ...]:
        return tuple(self._items.values())

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def total(self) -> Decimal:
        """Sum of ``price * quantity`` over the cart lines."""

        return sum((item.line_total for item in self._items.values()), Decimal("0"))

    def quantity_of(self, product_id: str) -> int:
        item = self._items.get(product_id)
        return item.quantity if item is not None else 0

    def add_item(self, product_id: str, *, tenant: Optional[str] = None) -> CartItem:
        """Reserve one unit of ``product_id`` and add it to the cart.

        The product is read from the store rather than trusted from the caller
        so the stock check always sees the current value. A new line snapshots
        the product as it is now; later adds only bump the quantity.

        Args:
            product_id (str): Product to add.
            tenant (str | None): When given, only that tenant's products can be
                added.

        Returns:
            CartItem: The updated cart line.

        Raises:
            NotFound: If the product does not exist or belongs to another
                tenant.
            OutOfStock: If the product has no stock left.
        """

        with self._step():
            product: Product = self._store.get(Collection.PRODUCTS, product_id)
            if tenant is not None and tenant_of(product.business_id) != tenant_of(tenant):
                log.warning("Rejected add of product '%s' from another tenant", product_id)
                raise NotFound(f"Unknown {Collection.PRODUCTS.value} id: {product_id}")
            if product.stock <= 0:
                log.warning("Rejected add of out-of-stock product '%s'", product_id)
                raise OutOfStock(f"'{product.name}' is out of stock")
            self._store.adjust_stock(product_id, -1)
            existing = self._items.get(product_id)
            if existing is None:
                item = CartItem(product=product, quantity=1)
            else:
                item = replace(existing, quantity=existing.quantity + 1)
            self._items[product_id] = item
        log.info("Cart: added '%s' (quantity=%d)", product_id, item.quantity)
        return item

    def set_quantity(self, product_id: str, delta: int) -> CartItem:
        """Adjust a cart line's quantity by ``delta``, never below one.

        The applied delta is ``max(1, quantity + delta) - quantity``; stock
        moves by exactly that amount in the opposite direction. With quantity
        1 and ``delta=-5`` nothing changes at all.

        Raises:
            ValidationError: If ``delta`` is not an integer.
            NotFound: If the product is not in the cart.
            OutOfStock: If the increase exceeds the remaining stock.
        """

        if isinstance(delta, bool) or not isinstance(delta, int):
            log.error("Quantity delta validation failed: %r", delta)
            raise ValidationError("Quantity delta must be an integer")

        with self._step():
            existing = self._require_item(product_id)
            new_quantity = max(1, existing.quantity + delta)
            applied = new_quantity - existing.quantity
            if applied == 0:
                log.debug("Cart: quantity of '%s' unchanged (requested delta %d)", product_id, delta)
                return existing
            if applied > 0:
                product: Product = self._store.get(Collection.PRODUCTS, product_id)
                if applied > product.stock:
                    log.warning(
                        "Rejected quantity increase of %d for '%s' (stock=%d)",
                        applied,
                        product_id,
                        product.stock,
                    )
                    raise OutOfStock(f"Only {product.stock} more of '{product.name}' available")
            self._store.adjust_stock(product_id, -applied)
            item = replace(existing, quantity=new_quantity)
            self._items[product_id] = item
        log.info("Cart: '%s' quantity %d -> %d", product_id, existing.quantity, new_quantity)
        return item

    def remove_item(self, product_id: str) -> int:
        """Drop a cart line and return its reserved units to stock.

        Returns:
            int: The quantity handed back.

        Raises:
            NotFound: If the product is not in the cart.
        """

        with self._step():
            item = self._require_item(product_id)
            self._release(item)
            del self._items[product_id]
        log.info("Cart: removed '%s' (returned %d to stock)", product_id, item.quantity)
        return item.quantity

    def clear(self) -> int:
        """Remove every line, returning all reserved units to stock.

        Returns:
            int: Total units handed back.
        """

        if not self._items:
            return 0
        returned = 0
        with self._step():
            for item in list(self._items.values()):
                self._release(item)
                returned += item.quantity
            self._items.clear()
        log.info("Cart cleared (returned %d units to stock)", returned)
        return returned

    def drain(self) -> List[CartItem]:
        """Empty the cart without touching stock and return the former lines.

        Checkout uses this: the reserved units are consumed by the sale.
        """

        items = list(self._items.values())
        self._items.clear()
        return items

    @contextmanager
    def _step(self) -> Iterator[None]:
        with self._store.lock:
            previous = dict(self._items)
            try:
                with self._store.transaction():
                    yield
            except BaseException:
                self._items = previous
                raise

    def _release(self, item: CartItem) -> None:
        product: Optional[Product] = self._store.find(Collection.PRODUCTS, item.id)
        if product is None:
            log.warning("Product '%s' vanished while reserved; dropping %d units", item.id, item.quantity)
            return
        self._store.adjust_stock(item.id, item.quantity)

    def _require_item(self, product_id: str) -> CartItem:
        try:
            return self._items[product_id]
        except KeyError as exc:
            log.warning("Cart lookup failed for product '%s'", product_id)
            raise NotFound(f"Product '{product_id}' is not in the cart") from exc
