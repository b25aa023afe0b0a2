"""Tests for replication between the local store and the remote store."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from barsync import accounts, remote as remote_module
from barsync.constants import AuditAction, Collection, ConnectivityState, PaymentMethod, Role
from barsync.data_manager import CartItem, Product, RemoteSettings, Sale, User
from barsync.errors import ConflictError, CredentialMismatch, RemoteUnavailable, ValidationError
from barsync.remote import InMemoryRemoteStore
from barsync.sync_bridge import SyncBridge, remote_is_newer, run_with_retry

TENANT = "bus_REMOTE1"
PASSWORD = "pass123"


@pytest.fixture
def bridge(store, remote, fake_sleep):
    settings = RemoteSettings(base_url="", max_retries=2, backoff_seconds=0.1)
    bridge = SyncBridge(store, remote, settings, sleep=fake_sleep)
    yield bridge
    bridge.shutdown()


def _remote_product(product_id: str = "P-remote", stock: int = 9) -> Product:
    return Product(
        id=product_id,
        name="Guinness",
        category="Beer",
        price=Decimal("300"),
        stock=stock,
        opening_stock=stock,
    )


def _remote_sale() -> Sale:
    return Sale(
        id="S-remote",
        business_id=TENANT,
        date="2024-05-01T19:00:00+00:00",
        items=(CartItem(product=_remote_product(), quantity=1),),
        total_amount=Decimal("300"),
        payment_method=PaymentMethod.CASH,
        sales_person="Wanjiru",
    )


def _sell_one(cart, checkout_processor, product_id: str, actor: User) -> Sale:
    cart.add_item(product_id)
    return checkout_processor.checkout(actor, PaymentMethod.CASH)


# ---------------------------------------------------------------------------
# Retry and reconciliation helpers
# ---------------------------------------------------------------------------


def test_run_with_retry_backs_off_exponentially(recorded_sleeps, fake_sleep):
    func = Mock(side_effect=[RemoteUnavailable("down"), RemoteUnavailable("down"), "ok"])

    result = run_with_retry(func, attempts=3, backoff_seconds=0.5, sleep=fake_sleep)

    assert result == "ok"
    assert func.call_count == 3
    assert recorded_sleeps == [0.5, 1.0]


def test_run_with_retry_gives_up_after_last_attempt(recorded_sleeps, fake_sleep):
    func = Mock(side_effect=RemoteUnavailable("down"))

    with pytest.raises(RemoteUnavailable):
        run_with_retry(func, attempts=2, backoff_seconds=0.5, sleep=fake_sleep)

    assert func.call_count == 2
    assert recorded_sleeps == [0.5]


def test_run_with_retry_does_not_retry_rejections(recorded_sleeps, fake_sleep):
    func = Mock(side_effect=CredentialMismatch())

    with pytest.raises(CredentialMismatch):
        run_with_retry(func, attempts=3, sleep=fake_sleep)

    assert func.call_count == 1
    assert recorded_sleeps == []


@pytest.mark.parametrize(
    ("remote_time", "local_time", "expected"),
    [
        (None, "2024-05-02T21:00:00+00:00", False),
        ("2024-05-02T21:00:00+00:00", None, True),
        ("2024-05-02T21:00:00Z", "2024-05-02T22:00:00+00:00", False),
        ("2024-05-02T23:00:00Z", "2024-05-02T22:00:00+00:00", True),
        ("2024-05-02T23:00:00", "2024-05-02T22:00:00+00:00", True),
        ("2024-05-02T21:00:00+00:00", "2024-05-02T22:00:00", False),
    ],
)
def test_remote_is_newer(remote_time, local_time, expected):
    assert remote_is_newer(remote_time, local_time) is expected


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_pulls_remote_snapshot(bridge, store, remote):
    remote.replace_products(TENANT, [_remote_product()])
    remote.append_sale(TENANT, _remote_sale())

    result = bridge.login("Kilele Lounge", "Otieno", PASSWORD)

    assert result.user.id == "user_BAR1"
    assert result.user.password is None
    assert bridge.state is ConnectivityState.ONLINE
    assert [p.id for p in store.products] == ["P-remote"]
    assert [s.id for s in store.sales] == ["S-remote"]
    assert store.last_sync is not None
    assert bridge.flush(5)


def test_login_keeps_newer_local_products(monkeypatch, bridge, store, remote, product_factory):
    with monkeypatch.context() as patch:
        patch.setattr(remote_module, "utc_now_iso", lambda: "2024-01-01T00:00:00+00:00")
        remote.replace_products(TENANT, [_remote_product()])
    local = product_factory("Tusker", business_id=TENANT)

    bridge.login("Kilele Lounge", "Otieno", PASSWORD)
    assert bridge.flush(5)

    assert [p.id for p in store.products] == [local.id]
    assert [p.id for p in remote.fetch_snapshot(TENANT).products] == [local.id]


def test_login_with_ambiguous_name_is_rejected(bridge, remote):
    remote.seed_user(User(id="user_BAR2", name="Otieno", role=Role.BARTENDER, business_id="bus_OTHER"))

    with pytest.raises(ConflictError):
        bridge.login("", "Otieno", PASSWORD)

    assert bridge.user is None


def test_login_with_bad_credentials_is_not_retried(bridge, remote, recorded_sleeps):
    with pytest.raises(CredentialMismatch):
        bridge.login("Kilele Lounge", "Otieno", "wrong")

    assert remote.calls.count("authenticate") == 1
    assert recorded_sleeps == []


def test_login_while_unreachable_goes_offline(bridge, store, remote, recorded_sleeps):
    remote.available = False

    with pytest.raises(RemoteUnavailable):
        bridge.login("Kilele Lounge", "Otieno", PASSWORD)

    status = bridge.status()
    assert status.state is ConnectivityState.OFFLINE
    assert status.last_error
    assert recorded_sleeps == [0.1]
    assert store.products == []


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


def test_commits_are_pushed_to_remote(bridge, remote, cart, checkout_processor, product_factory):
    result = bridge.login("Kilele Lounge", "Otieno", PASSWORD)
    product = product_factory("Tusker", stock=5, business_id=TENANT)

    sale = _sell_one(cart, checkout_processor, product.id, result.user)
    assert bridge.flush(5)

    snapshot = remote.fetch_snapshot(TENANT)
    assert [p.stock for p in snapshot.products] == [4]
    assert [s.id for s in snapshot.sales] == [sale.id]
    assert [entry.action for entry in snapshot.audit_logs] == [AuditAction.SALE.value]
    status = bridge.status()
    assert status.pending is False
    assert status.last_error is None


def test_outage_queues_work_until_connectivity_returns(bridge, remote, cart, checkout_processor, product_factory):
    result = bridge.login("Kilele Lounge", "Otieno", PASSWORD)
    product = product_factory("Tusker", stock=5, business_id=TENANT)
    assert bridge.flush(5)
    remote.available = False

    sale = _sell_one(cart, checkout_processor, product.id, result.user)

    assert bridge.flush(5) is False
    status = bridge.status()
    assert status.state is ConnectivityState.OFFLINE
    assert status.pending is True
    assert "unreachable" in status.last_error

    second = _sell_one(cart, checkout_processor, product.id, result.user)
    remote.available = True
    bridge.set_connectivity(True)
    assert bridge.flush(5)

    snapshot = remote.fetch_snapshot(TENANT)
    assert {s.id for s in snapshot.sales} == {sale.id, second.id}
    assert [p.stock for p in snapshot.products] == [3]
    assert bridge.state is ConnectivityState.ONLINE


def test_offline_bind_pulls_remote_state_on_first_push(bridge, store, remote, cart, checkout_processor, product_factory):
    remote.append_sale(TENANT, _remote_sale())
    user = User(id="user_BAR1", name="Otieno", role=Role.BARTENDER, business_id=TENANT)
    bridge.bind(user)
    product = product_factory("Tusker", stock=5, business_id=TENANT)
    sale = _sell_one(cart, checkout_processor, product.id, user)
    assert bridge.status().pending is True

    bridge.set_connectivity(True)
    assert bridge.flush(5)

    assert {s.id for s in store.sales} == {"S-remote", sale.id}
    assert {s.id for s in remote.fetch_snapshot(TENANT).sales} == {"S-remote", sale.id}


def test_other_tenants_records_are_not_pushed(bridge, store, remote, audit, owner):
    bridge.login("Kilele Lounge", "Otieno", PASSWORD)
    audit.record(AuditAction.LOGIN, "local tenant entry", owner)

    assert bridge.flush(5)

    assert remote.fetch_snapshot(TENANT).audit_logs == ()


def test_only_the_tenants_products_are_pushed_and_replaced(bridge, store, remote, product_factory):
    foreign = product_factory("Kilele Secret Gin", business_id="bus_OTHER")
    remote.replace_products(TENANT, [_remote_product()])

    bridge.login("Kilele Lounge", "Otieno", PASSWORD)
    assert bridge.flush(5)

    assert [p.id for p in store.products] == [foreign.id, "P-remote"]
    assert store.get(Collection.PRODUCTS, "P-remote").business_id == TENANT
    assert [p.id for p in remote.fetch_snapshot(TENANT).products] == ["P-remote"]


def test_pull_subtracts_units_held_in_the_cart(store, remote, fake_sleep, cart, product_factory):
    product = product_factory("Tusker", stock=10, business_id=TENANT)
    cart.add_item(product.id)
    remote.replace_products(TENANT, [_remote_product(product.id, stock=10)])
    bridge = SyncBridge(store, remote, RemoteSettings(base_url=""), sleep=fake_sleep, reserved=cart.quantity_of)
    try:
        bridge.login("Kilele Lounge", "Otieno", PASSWORD)
        assert bridge.flush(5)
    finally:
        bridge.shutdown()

    assert store.get(Collection.PRODUCTS, product.id).stock == 9
    cart.remove_item(product.id)
    assert store.get(Collection.PRODUCTS, product.id).stock == 10


class RejectingRemote(InMemoryRemoteStore):
    def append_sale(self, business_id, sale):
        raise ValidationError("Sale rejected")


def test_rejected_push_keeps_bridge_online(store, fake_sleep, cart, checkout_processor, product_factory):
    rejecting = RejectingRemote()
    rejecting.seed_user(
        User(id="user_BAR1", name="Otieno", role=Role.BARTENDER, password=accounts.hash_password(PASSWORD))
    )
    bridge = SyncBridge(store, rejecting, RemoteSettings(base_url="", max_retries=3), sleep=fake_sleep)
    try:
        result = bridge.login("", "Otieno", PASSWORD)
        product = product_factory()
        _sell_one(cart, checkout_processor, product.id, result.user)

        assert bridge.flush(5) is False
        status = bridge.status()
        assert status.state is ConnectivityState.ONLINE
        assert status.last_error == "Sale rejected"
        assert status.pending is True
    finally:
        bridge.shutdown()


def test_shutdown_stops_listening(bridge, remote, product_factory):
    bridge.login("Kilele Lounge", "Otieno", PASSWORD)
    assert bridge.flush(5)
    calls_before = len(remote.calls)

    bridge.shutdown()
    product_factory("Tusker")

    assert bridge.request_push() is None
    assert len(remote.calls) == calls_before
