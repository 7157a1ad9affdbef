"""
Cart service - stock reservations held on behalf of a cashier or customer.

A cart line records how many units the cart holds; the product side of the
hold lives in ``reserved_quantity`` and is only touched through the ledger.
Cart lines are decremented with conditional updates before stock is released,
so a replayed release (tab-close beacon fired twice) releases nothing the
second time.
"""
import logging
from typing import Dict, Iterable, Optional, Tuple

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from core.exceptions import NotFoundError, OrderValidationError
from inventory.ledger import StockLedger, StockSnapshot
from inventory.models import Product
from .models import Cart, CartItem, default_cart_expiry

logger = logging.getLogger(__name__)


class CartService:
    def __init__(self, ledger: Optional[StockLedger] = None):
        self.ledger = ledger or StockLedger()

    def get_cart(self, store, owner_key: str, create: bool = False) -> Optional[Cart]:
        if create:
            cart, created = Cart.objects.get_or_create(store=store, owner_key=owner_key)
            if created:
                logger.info(f"Opened cart {owner_key} at store {store.pk}")
            return cart
        return Cart.objects.filter(store=store, owner_key=owner_key).first()

    def reserve_item(self, cart: Cart, product_id, qty: int) -> Tuple[CartItem, StockSnapshot]:
        """Reserve ``qty`` more units of a product and add them to the cart."""
        product = Product.objects.filter(pk=product_id, store_id=cart.store_id, is_active=True).first()
        if product is None:
            raise NotFoundError(f"Product not found: {product_id}")

        with transaction.atomic():
            snapshot = self.ledger.reserve(
                product.pk, qty, store_id=cart.store_id,
                reason='Added to cart', reference=f'cart {cart.owner_key}'
            )
            item, _ = CartItem.objects.get_or_create(
                cart=cart,
                product=product,
                defaults={
                    'product_name': product.name,
                    'unit_price': product.effective_price,
                    'quantity': 0,
                }
            )
            CartItem.objects.filter(pk=item.pk).update(
                quantity=F('quantity') + qty,
                unit_price=product.effective_price,
                reserved_at=timezone.now()
            )
            self._touch(cart)
        item.refresh_from_db()
        return item, snapshot

    def release_item(self, cart: Cart, product_id, qty: int) -> Tuple[Optional[StockSnapshot], int]:
        """
        Release up to ``qty`` units the cart holds.

        Releasing a product the cart does not hold is a no-op.
        """
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise OrderValidationError("Quantity must be a positive integer")

        taken = self._take(cart, product_id, qty)
        if not taken:
            return None, 0
        snapshot, released = self.ledger.release(
            product_id, taken, store_id=cart.store_id,
            reason='Removed from cart', reference=f'cart {cart.owner_key}'
        )
        if released != taken:
            logger.warning(
                f"Cart {cart.owner_key} held {taken} of product {product_id} "
                f"but only {released} were reserved"
            )
        self._touch(cart)
        return snapshot, released

    def set_item_quantity(self, cart: Cart, product_id, qty: int) -> int:
        """Reserve or release the difference so the cart holds exactly ``qty``."""
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 0:
            raise OrderValidationError("Quantity must be zero or a positive integer")
        current = (
            CartItem.objects.filter(cart=cart, product_id=product_id)
            .values_list('quantity', flat=True)
            .first()
        ) or 0
        if qty > current:
            self.reserve_item(cart, product_id, qty - current)
        elif qty < current:
            self.release_item(cart, product_id, current - qty)
        return qty

    def release_cart(self, cart: Cart) -> int:
        """Release everything the cart holds and delete it."""
        released_total = 0
        for product_id, held in list(cart.items.values_list('product_id', 'quantity')):
            if held:
                _, released = self.release_item(cart, product_id, held)
                released_total += released
        cart.delete()
        logger.info(f"Released cart {cart.owner_key}: {released_total} unit(s) returned to stock")
        return released_total

    def held_quantities(self, cart: Cart) -> Dict[int, int]:
        return dict(cart.items.filter(quantity__gt=0).values_list('product_id', 'quantity'))

    def claim(self, cart: Cart, lines: Iterable[Tuple[int, int]]) -> Dict[int, int]:
        """
        Take cart holds for an order being created.

        Returns ``{product_id: held}`` for the units that came from the cart;
        those units are passed as ``held`` to ``StockLedger.commit``.
        """
        held = {}
        for product_id, qty in lines:
            taken = self._take(cart, product_id, qty)
            if taken:
                held[product_id] = taken
        return held

    def unclaim(self, cart: Cart, held: Dict[int, int]) -> None:
        """Give claimed holds back to the cart after a failed order."""
        for product_id, qty in held.items():
            product = Product.objects.get(pk=product_id)
            item, _ = CartItem.objects.get_or_create(
                cart=cart,
                product=product,
                defaults={
                    'product_name': product.name,
                    'unit_price': product.effective_price,
                    'quantity': 0,
                }
            )
            CartItem.objects.filter(pk=item.pk).update(quantity=F('quantity') + qty)

    def prune(self, cart: Cart) -> None:
        """Delete the cart once it holds nothing."""
        if not cart.items.filter(quantity__gt=0).exists():
            cart.delete()

    def _take(self, cart: Cart, product_id, qty: int) -> int:
        """Conditionally decrement a cart line; returns the units taken."""
        current = (
            CartItem.objects.filter(cart=cart, product_id=product_id)
            .values_list('quantity', flat=True)
            .first()
        )
        if not current:
            return 0
        taken = min(qty, current)
        updated = CartItem.objects.filter(
            cart=cart, product_id=product_id, quantity=current
        ).update(quantity=F('quantity') - taken)
        if not updated:
            # A concurrent release changed the line first.
            return 0
        CartItem.objects.filter(cart=cart, product_id=product_id, quantity=0).delete()
        return taken

    def _touch(self, cart: Cart) -> None:
        Cart.objects.filter(pk=cart.pk).update(expires_at=default_cart_expiry(), updated_at=timezone.now())
