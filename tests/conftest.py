import pytest

from groupbuy.order_service import OrderService
from groupbuy.order_store import InMemoryOrderStore
from groupbuy.schemas import Customer, LineItem, Product, Variant
from groupbuy.stock_ledger import InMemoryStockLedger

SHOP = "shop-1"


def make_products():
    return [
        Product(product_id="P", shop_id=SHOP, name="Mochi Box", price=120, total_stock=5),
        Product(product_id="Q", shop_id=SHOP, name="Tote Bag", price=350,
                variants=[Variant(name="Red", stock=2), Variant(name="Blue", stock=3)],
                target_amount=10),
        Product(product_id="GONE", shop_id=SHOP, name="Old Stock", price=10, total_stock=9, is_deleted=True),
        Product(product_id="OTHER", shop_id="shop-2", name="Elsewhere", price=10, total_stock=9),
    ]


def line(product_id, qty, variant=None):
    return LineItem(product_id=product_id, variant=variant, qty=qty)


@pytest.fixture
def customer():
    return Customer(name="Lin", phone="0912345678", address="Taipei", shipping="711", last5="12345")


@pytest.fixture
def ledger():
    return InMemoryStockLedger(make_products(), timeout=1)


@pytest.fixture
def order_store():
    return InMemoryOrderStore(drop_rate=0)


@pytest.fixture
def service(ledger, order_store):
    return OrderService(ledger, order_store, attempts=3, backoff=0)
