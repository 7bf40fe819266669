from datetime import timedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional

from commerce_core.core import get_logger
from commerce_core.core_settings import get_settings
from commerce_core.domain.errors import ConflictError, NotFoundError, ValidationError
from commerce_core.domain.models import CartLineItem, ShoppingCart, as_utc, utcnow
from .schemas import Principal

logger = get_logger(__name__)


class CartService:
    """One cart per user; every write goes through the locked cart row."""

    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()

    def _expiry(self):
        return utcnow() + timedelta(days=self.settings.CART_TTL_DAYS)

    def _find_cart(self, user_id: str, lock: bool = False) -> Optional[ShoppingCart]:
        query = self.db.query(ShoppingCart).filter(ShoppingCart.user_id == user_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def _purge_if_expired(self, cart: ShoppingCart) -> bool:
        expires_at = as_utc(cart.expires_at)
        if expires_at is None or expires_at > utcnow():
            return False
        logger.info(
            f"Cart {cart.id} expired, emptying",
            extra={'extra_fields': {'cart_id': cart.id, 'items': len(cart.line_items)}},
        )
        cart.line_items.clear()
        cart.expires_at = self._expiry()
        self.db.flush()
        return True

    def _get_or_create_cart(self, principal: Principal) -> ShoppingCart:
        cart = self._find_cart(principal.id, lock=True)
        if cart is not None:
            return cart
        cart = ShoppingCart(
            user_id=principal.id,
            currency=self.settings.DEFAULT_CURRENCY,
            expires_at=self._expiry(),
        )
        self.db.add(cart)
        try:
            self.db.flush()
        except IntegrityError:
            # another request created it first
            self.db.rollback()
            cart = self._find_cart(principal.id, lock=True)
            if cart is None:
                raise ConflictError("Cart could not be created")
        return cart

    def _owned_item(self, principal: Principal, item_id: int) -> tuple[ShoppingCart, CartLineItem]:
        cart = self._find_cart(principal.id, lock=True)
        item = None
        if cart is not None:
            item = self.db.query(CartLineItem).filter(
                CartLineItem.id == item_id,
                CartLineItem.cart_id == cart.id,
            ).first()
        if item is None:
            raise NotFoundError("Cart item not found", code="CART_ITEM_NOT_FOUND")
        return cart, item

    def get_cart(self, principal: Principal) -> Optional[ShoppingCart]:
        cart = self._find_cart(principal.id)
        if cart is None:
            return None
        if self._purge_if_expired(cart):
            self.db.commit()
        return cart

    def add_item(
        self,
        principal: Principal,
        product_id: str,
        variant_id: Optional[str] = None,
        quantity: int = 1,
        properties: Optional[dict] = None,
    ) -> CartLineItem:
        """Add to the caller's cart, merging with an existing row for the same product/variant."""
        if quantity is None or quantity <= 0:
            raise ValidationError("Quantity must be positive")

        cart = self._get_or_create_cart(principal)
        self._purge_if_expired(cart)

        query = self.db.query(CartLineItem).filter(
            CartLineItem.cart_id == cart.id,
            CartLineItem.product_id == product_id,
        )
        if variant_id is None:
            query = query.filter(CartLineItem.variant_id.is_(None))
        else:
            query = query.filter(CartLineItem.variant_id == variant_id)
        item = query.first()

        if item is not None:
            item.quantity += quantity
            if properties is not None:
                item.properties = properties
        else:
            item = CartLineItem(
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity,
                properties=properties,
            )
            cart.line_items.append(item)
        cart.expires_at = self._expiry()

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Cart was modified concurrently, retry the request")
        self.db.refresh(item)
        logger.info(
            f"Cart item added: product {product_id}",
            extra={'extra_fields': {
                'cart_id': cart.id, 'item_id': item.id, 'quantity': item.quantity,
            }},
        )
        return item

    def update_item(
        self,
        principal: Principal,
        item_id: int,
        quantity: int,
        properties: Optional[dict] = None,
    ) -> Optional[CartLineItem]:
        """Overwrite the quantity; zero removes the item and returns None."""
        if quantity is None or quantity < 0:
            raise ValidationError("Quantity must not be negative")
        cart, item = self._owned_item(principal, item_id)
        if quantity == 0:
            cart.line_items.remove(item)
            self.db.commit()
            logger.info(f"Cart item {item_id} removed via zero quantity")
            return None
        item.quantity = quantity
        if properties is not None:
            item.properties = properties
        cart.expires_at = self._expiry()
        self.db.commit()
        self.db.refresh(item)
        return item

    def remove_item(self, principal: Principal, item_id: int) -> None:
        cart, item = self._owned_item(principal, item_id)
        cart.line_items.remove(item)
        self.db.commit()
        logger.info(f"Cart item {item_id} removed")

    def clear(self, principal: Principal) -> int:
        cart = self._find_cart(principal.id, lock=True)
        if cart is None:
            return 0
        removed = len(cart.line_items)
        cart.line_items.clear()
        self.db.commit()
        logger.info(f"Cart {cart.id} cleared", extra={'extra_fields': {'removed': removed}})
        return removed
