"""Checkout processor: turns the active cart into a permanent sale.

Stock was already reserved unit by unit while the cart was built, so checkout
performs no stock mutation: it freezes the cart lines into a :class:`Sale`,
appends it together with a ``SALE`` audit entry in one store transaction, and
then empties the cart without handing the units back.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from . import log
from .audit import AuditRecorder
from .cart import CartEngine
from .constants import CURRENCY_LABEL, GLOBAL_TENANT_ID, AuditAction, Collection, PaymentMethod
from .data_manager import CartItem, Sale, User
from .entity_store import EntityStore, utc_now_iso
from .errors import InvalidState, ValidationError


def _resolve_payment_method(candidate: Union[PaymentMethod, str]) -> PaymentMethod:
    if isinstance(candidate, PaymentMethod):
        return candidate
    try:
        return PaymentMethod(candidate)
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", candidate)
        raise ValidationError(f"Unsupported payment method: {candidate}") from exc


def freeze_items(items: Iterable[CartItem]) -> tuple[CartItem, ...]:
    """Copy cart lines so the sale shares no objects with the live cart."""

    return tuple(
        CartItem(product=replace(item.product), quantity=item.quantity) for item in items
    )


def calculate_total(items: Iterable[CartItem]) -> Decimal:
    return sum((item.price * item.quantity for item in items), Decimal("0"))


class CheckoutProcessor:
    """Settles the cart of one terminal session."""

    def __init__(self, store: EntityStore, cart: CartEngine, audit: AuditRecorder) -> None:
        self._store = store
        self._cart = cart
        self._audit = audit

    def checkout(
        self,
        actor: Optional[User],
        payment_method: Union[PaymentMethod, str],
        customer_phone: Optional[str] = None,
    ) -> Sale:
        """Convert the current cart into an immutable sale.

        Args:
            actor (User | None): Cashier settling the bill. Their business
                becomes the sale's tenant (``"global"`` when they have none)
                and their current name is snapshotted as ``sales_person``.
            payment_method (PaymentMethod | str): ``Cash`` or ``Mpesa``.
            customer_phone (str | None): Optional phone for the receipt.

        Returns:
            Sale: The stored sale.

        Raises:
            InvalidState: If the cart is empty or nobody is logged in. No
                collection is touched in that case.
            ValidationError: If the payment method is unsupported.
            StorageError: If the sale cannot be persisted; the cart is left
                intact so the cashier can retry.
        """

        method = _resolve_payment_method(payment_method)
        with self._store.lock:
            if self._cart.is_empty:
                log.warning("Rejected checkout of an empty cart")
                raise InvalidState("Cannot check out an empty cart")
            if actor is None:
                log.warning("Rejected checkout without an authenticated user")
                raise InvalidState("An authenticated user is required to check out")

            items = freeze_items(self._cart.items)
            sale = Sale(
                id="",
                business_id=actor.business_id or GLOBAL_TENANT_ID,
                date=utc_now_iso(),
                items=items,
                total_amount=calculate_total(items),
                payment_method=method,
                sales_person=actor.name,
                customer_phone=(customer_phone or "").strip() or None,
            )
            with self._store.transaction():
                stored = self._store.add(Collection.SALES, sale)
                self._audit.record(
                    AuditAction.SALE,
                    f"Processed transaction {stored.id} for {CURRENCY_LABEL} {stored.total_amount:,}",
                    actor,
                )
            self._cart.drain()

        log.info(
            "Recorded SALE '%s' (%d lines, total=%s, method=%s)",
            stored.id,
            len(stored.items),
            stored.total_amount,
            method.value,
        )
        return stored


def sales_for_business(store: EntityStore, business_id: Optional[str]) -> List[Sale]:
    """Return the tenant's sales, newest first."""

    tenant = business_id or GLOBAL_TENANT_ID
    sales = [sale for sale in store.sales if sale.business_id == tenant]
    return sorted(sales, key=lambda sale: sale.date, reverse=True)


def summarize_sales(sales: Iterable[Sale]) -> Dict[str, object]:
    """Produce aggregate revenue, cost, and profit metrics.

    Cost uses each frozen line's buying price; lines without one count as
    zero cost. Figures come from what was stored at sale time, never from the
    current product list.

    Returns:
        dict[str, object]: ``count``, ``total_revenue``, ``total_cost``,
            ``profit``, ``units`` and ``by_payment_method`` (method value to
            revenue).
    """

    count = 0
    units = 0
    total_revenue = Decimal("0")
    total_cost = Decimal("0")
    by_method: Dict[str, Decimal] = {method.value: Decimal("0") for method in PaymentMethod}
    for sale in sales:
        count += 1
        total_revenue += sale.total_amount
        by_method[sale.payment_method.value] += sale.total_amount
        for item in sale.items:
            units += item.quantity
            if item.product.buying_price is not None:
                total_cost += item.product.buying_price * item.quantity
    profit = total_revenue - total_cost
    log.debug(
        "Calculated sales summary: count=%d revenue=%s cost=%s profit=%s",
        count,
        total_revenue,
        total_cost,
        profit,
    )
    return {
        "count": count,
        "units": units,
        "total_revenue": total_revenue,
        "total_cost": total_cost,
        "profit": profit,
        "by_payment_method": by_method,
    }
