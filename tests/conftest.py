import pytest
from sqlalchemy import select, update

from storefront.cart import CartStore
from storefront.checkout import CheckoutService
from storefront.database import Base, make_engine, make_session_factory
from storefront.models import Order, OrderStatusHistory, Product
from storefront.payment_gateway import GatewayRegistry, InitiatedPayment, PaymentGateway, PaymentMethod
from storefront.reconciler import PaymentReconciler

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_storefront.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = make_session_factory(engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory():
    return TestingSessionLocal


def opened_session(amount, currency, order_ref, redirect_url, attempt_id, payment_method=None):
    return InitiatedPayment(
        provider_payment_id=f"ev_{attempt_id}",
        payment_url=f"https://pay.eversend.test/{attempt_id}",
    )


@pytest.fixture
def gateway(mocker):
    gateway = mocker.Mock(spec=PaymentGateway)
    gateway.name = "eversend"
    gateway.payment_methods.return_value = [
        PaymentMethod("eversend_card", "Credit/Debit Card", "Pay by card", "eversend"),
    ]
    gateway.initiate.side_effect = opened_session
    gateway.get_status.return_value = None
    gateway.settle.side_effect = lambda event: event
    return gateway


@pytest.fixture
def gateways(gateway):
    return GatewayRegistry([gateway])


@pytest.fixture
def cart():
    return CartStore(TestingSessionLocal)


@pytest.fixture
def checkout(gateways):
    return CheckoutService(TestingSessionLocal, gateways)


@pytest.fixture
def reconciler(gateways):
    return PaymentReconciler(TestingSessionLocal, gateways)


@pytest.fixture
def add_product():
    def _add(name="Notebook", price=1500, stock=10, is_active=True):
        with TestingSessionLocal() as db, db.begin():
            product = Product(name=name, price=price, stock=stock, is_active=is_active)
            db.add(product)
            db.flush()
            return product.id
    return _add


@pytest.fixture
def stock_of():
    def _stock(product_id):
        with TestingSessionLocal() as db:
            return db.get(Product, product_id).stock
    return _stock


@pytest.fixture
def set_stock():
    def _set(product_id, stock=None, price=None):
        values = {}
        if stock is not None:
            values["stock"] = stock
        if price is not None:
            values["price"] = price
        with TestingSessionLocal() as db, db.begin():
            db.execute(update(Product).where(Product.id == product_id).values(**values))
    return _set


@pytest.fixture
def set_order_status():
    def _set(order_id, status):
        with TestingSessionLocal() as db, db.begin():
            db.execute(update(Order).where(Order.id == order_id).values(status=status))
    return _set


@pytest.fixture
def order_status():
    def _status(order_id):
        with TestingSessionLocal() as db:
            return db.get(Order, order_id).status
    return _status


@pytest.fixture
def history_of():
    def _history(order_id):
        with TestingSessionLocal() as db:
            rows = db.scalars(
                select(OrderStatusHistory).where(OrderStatusHistory.order_id == order_id).order_by(OrderStatusHistory.id)
            )
            return [(row.from_status, row.to_status) for row in rows]
    return _history


@pytest.fixture
def place_order(cart, checkout):
    def _place(user, *lines, payment_method="eversend_card", currency=None):
        for product_id, quantity in lines:
            cart.add_or_update(user.user_id, product_id, quantity)
        return checkout.create_order(user, shipping_address="12 Market Street", payment_method=payment_method,
                                     currency=currency)
    return _place
