from sqlalchemy import delete, func, select

from storefront.errors import CartItemNotFound, InsufficientStock, ProductUnavailable, ValidationFailed
from storefront.logging_config import get_logger
from storefront.models import CartItem, Product

log = get_logger(__name__)


class CartStore:
    """Per-user cart lines.

    Stock and price checks here are advisory; stock can still move before
    checkout, where the inventory ledger has the final word.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, user_id: int):
        with self.session_factory() as db:
            return list(db.scalars(select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.id)))

    def summary(self, user_id: int):
        items = self.get(user_id)
        return {
            "items": items,
            "total": sum(item.line_total for item in items),
            "count": sum(item.quantity for item in items),
        }

    def count(self, user_id: int) -> int:
        with self.session_factory() as db:
            return db.scalar(
                select(func.coalesce(func.sum(CartItem.quantity), 0)).where(CartItem.user_id == user_id)
            )

    def add_or_update(self, user_id: int, product_id: int, delta: int) -> CartItem:
        if delta <= 0:
            raise ValidationFailed("quantity must be greater than 0")

        with self.session_factory() as db, db.begin():
            product = db.get(Product, product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(product_id)

            item = db.scalars(
                select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
            ).first()
            wanted = delta + (item.quantity if item else 0)
            if wanted > product.stock:
                raise InsufficientStock(product_id, wanted)

            if item is None:
                item = CartItem(user_id=user_id, product_id=product_id, quantity=wanted)
                db.add(item)
            else:
                item.quantity = wanted
            # refresh the snapshot so the cart shows today's catalog price
            item.name = product.name
            item.unit_price = product.price
            db.flush()

        log.info(f"[User: {user_id}] Cart line for product {product_id} now has quantity {wanted}")
        return item

    def set_quantity(self, user_id: int, item_id: int, quantity: int):
        """Sets a line's quantity; 0 removes the line and returns None."""
        if quantity < 0:
            raise ValidationFailed("quantity cannot be negative")

        with self.session_factory() as db, db.begin():
            item = self._owned_item(db, user_id, item_id)
            if quantity == 0:
                db.delete(item)
                return None

            product = db.get(Product, item.product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(item.product_id)
            if quantity > product.stock:
                raise InsufficientStock(item.product_id, quantity)

            item.quantity = quantity
            item.unit_price = product.price
            db.flush()
            return item

    def remove(self, user_id: int, item_id: int):
        with self.session_factory() as db, db.begin():
            db.delete(self._owned_item(db, user_id, item_id))

    def clear(self, user_id: int):
        with self.session_factory() as db, db.begin():
            clear_cart(db, user_id)

    @staticmethod
    def _owned_item(db, user_id, item_id):
        item = db.get(CartItem, item_id)
        if item is None or item.user_id != user_id:
            raise CartItemNotFound(item_id)
        return item


def clear_cart(db, user_id: int):
    """Deletes every line of a cart inside the caller's transaction."""
    db.execute(delete(CartItem).where(CartItem.user_id == user_id))
