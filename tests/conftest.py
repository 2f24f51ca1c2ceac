import pytest

from checkin_unified import (
    CheckinLedger,
    Config,
    MemberListHook,
    WooCommerceError,
)


class FakeWooCommerce:
    """Stands in for WooCommerceClient; records every call."""

    def __init__(self):
        self.products = []
        self.orders = {}
        self.failing = set()
        self.calls = []

    def set_orders(self, product_id, orders):
        self.orders[str(product_id)] = orders

    def get_products(self):
        self.calls.append(('products', None))
        if 'products' in self.failing:
            raise WooCommerceError("API error 503: unavailable", status_code=503)
        return list(self.products)

    def get_orders_for_product(self, product_id, event_date=None):
        self.calls.append(('orders', str(product_id)))
        if str(product_id) in self.failing:
            raise WooCommerceError("WooCommerce API request timed out", code="ETIMEDOUT")
        return list(self.orders.get(str(product_id), []))

    @property
    def order_calls(self):
        return [pid for kind, pid in self.calls if kind == 'orders']


class RecordingHook(MemberListHook):

    def __init__(self, fail=False):
        self.added = []
        self.removed = []
        self.fail = fail

    def add(self, member):
        if self.fail:
            raise ConnectionError("member list unavailable")
        self.added.append(member['email'])

    def remove(self, email):
        if self.fail:
            raise ConnectionError("member list unavailable")
        self.removed.append(email)


@pytest.fixture
def config(tmp_path):
    return Config(
        woocommerce_url="https://shop.example.org",
        consumer_key="ck_test",
        consumer_secret="cs_test",
        request_delay=0,
        retry_base_delay=0,
        db_path=str(tmp_path / "ledger.db"),
    )


@pytest.fixture
def woo():
    return FakeWooCommerce()


@pytest.fixture
def hook():
    return RecordingHook()


@pytest.fixture
def ledger(config, woo, hook):
    ledger = CheckinLedger(config, client=woo, hook=hook)
    yield ledger
    ledger.db.close()


@pytest.fixture
def db(ledger):
    return ledger.db
