"""
Stock reservations against the products table.

Reservations are a single guarded UPDATE so that two checkouts racing for
the last units cannot both succeed. The ledger never commits: it runs inside
the caller's transaction, and the caller decides whether to roll back.
"""

from sqlalchemy import select, update

from storefront.errors import InsufficientStock, IntegrityViolation, ProductNotFound
from storefront.logging_config import get_logger
from storefront.models import Product

log = get_logger(__name__)


class InventoryLedger:

    def __init__(self, db):
        self.db = db

    def reserve(self, product_id: int, quantity: int):
        """
        Takes ``quantity`` units of a product out of stock.

        Raises:
            InsufficientStock: If fewer than ``quantity`` units remain.
            ProductNotFound: If the product does not exist.
        """
        if quantity <= 0:
            raise ValueError(f"reservation quantity must be positive, got {quantity}")

        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            log.debug(f"Reserved {quantity} of product {product_id}")
            return

        exists = self.db.execute(select(Product.id).where(Product.id == product_id)).first()
        if exists is None:
            raise ProductNotFound(product_id)
        raise InsufficientStock(product_id, quantity)

    def release(self, product_id: int, quantity: int):
        """Puts ``quantity`` units back. A missing product here is a data bug, not a retry case."""
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            log.critical(f"Cannot release {quantity} units: product {product_id} does not exist")
            raise IntegrityViolation(f"Inventory release for unknown product {product_id}")
        log.debug(f"Released {quantity} of product {product_id}")

