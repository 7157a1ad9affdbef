"""
Inventory Models - Stores and the products they stock.

Models:
    - Store: A shop location; every product, cart and order is scoped to one
    - Product: Items for sale, carrying the stock quantity triple
    - StockMovement: Append-only audit trail of every ledger mutation

Stock quantities are only ever changed through ``inventory.ledger.StockLedger``.
"""
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models


class Store(models.Model):
    """
    Store entity representing a physical or virtual shop.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Store name"
    )
    slug = models.SlugField(
        max_length=200,
        unique=True,
        help_text="URL-safe store identifier used by the public shop"
    )
    location = models.CharField(
        max_length=300,
        blank=True,
        default='',
        help_text="Store address or location description"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether store is operational"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Store'
        verbose_name_plural = 'Stores'
        ordering = ['name']

    def __str__(self):
        return self.name


class Product(models.Model):
    """
    Product entity with stock levels.

    Quantity fields:
        - quantity: physical stock not yet sold (committed orders deducted)
        - reserved_quantity: units held by carts not yet turned into orders
        - available_quantity: units free to reserve or sell

    At rest ``available_quantity + reserved_quantity == quantity``.
    """
    store = models.ForeignKey(
        Store,
        on_delete=models.CASCADE,
        related_name='products',
        help_text="Store stocking this product"
    )
    name = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Product name for display and search"
    )
    sku = models.CharField(
        max_length=64,
        blank=True,
        null=True,
        help_text="Optional stock keeping unit, unique per store"
    )
    category = models.CharField(
        max_length=50,
        blank=True,
        default='',
        db_index=True
    )
    description = models.TextField(blank=True, default='')
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Regular unit price"
    )
    discount_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Sale price; used instead of price when set and positive"
    )
    cost = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    quantity = models.PositiveIntegerField(default=0)
    reserved_quantity = models.PositiveIntegerField(default=0)
    available_quantity = models.PositiveIntegerField(default=0)
    low_stock_threshold = models.PositiveIntegerField(
        default=5,
        help_text="Threshold for low stock alerts"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        constraints = [
            models.UniqueConstraint(
                fields=['store', 'sku'],
                name='unique_store_product_sku'
            ),
            models.CheckConstraint(
                condition=models.Q(quantity__gte=0)
                & models.Q(reserved_quantity__gte=0)
                & models.Q(available_quantity__gte=0),
                name='product_quantities_non_negative'
            ),
            models.CheckConstraint(
                condition=models.Q(quantity=models.F('available_quantity') + models.F('reserved_quantity')),
                name='product_quantity_sum'
            ),
        ]
        indexes = [
            models.Index(fields=['store', 'is_active']),
            models.Index(fields=['store', 'category']),
        ]

    def __str__(self):
        return f"{self.name} (${self.price})"

    def clean(self):
        if self.discount_price and self.discount_price >= self.price:
            raise ValidationError({'discount_price': 'Discount price must be less than the regular price'})

    @property
    def effective_price(self) -> Decimal:
        if self.discount_price and self.discount_price > 0:
            return self.discount_price
        return self.price

    @property
    def is_low_stock(self) -> bool:
        return self.available_quantity <= self.low_stock_threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.available_quantity == 0


class StockMovement(models.Model):
    """
    One row per ledger mutation, written inside the same transaction as the
    quantity update it describes.

    ``quantity_change`` is the signed change to on-hand stock and
    ``available_change`` the signed change to sellable stock; a reservation
    moves only the latter.
    """

    class Action(models.TextChoices):
        RESERVATION = 'reservation', 'Reservation'
        RELEASE = 'release', 'Release'
        SALE = 'sale', 'Sale'
        RESTORE = 'restore', 'Restore'
        RESTOCK = 'restock', 'Restock'
        ADJUSTMENT = 'adjustment', 'Adjustment'

    store = models.ForeignKey(Store, on_delete=models.CASCADE, related_name='stock_movements')
    product = models.ForeignKey(
        Product,
        on_delete=models.SET_NULL,
        null=True,
        related_name='movements'
    )
    product_name = models.CharField(max_length=100)
    action = models.CharField(max_length=20, choices=Action.choices, db_index=True)
    quantity_change = models.IntegerField(default=0)
    available_change = models.IntegerField(default=0)
    quantity_after = models.PositiveIntegerField()
    reserved_after = models.PositiveIntegerField()
    available_after = models.PositiveIntegerField()
    reason = models.CharField(max_length=255, blank=True, default='')
    reference = models.CharField(
        max_length=100,
        blank=True,
        default='',
        help_text="Sale or cart the movement belongs to, e.g. 'sale #12'"
    )
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['store', 'created_at']),
            models.Index(fields=['product', 'created_at']),
        ]

    def __str__(self):
        return f"{self.action} {self.available_change:+d} {self.product_name}"

    @property
    def available_before(self) -> int:
        return self.available_after - self.available_change

    @property
    def quantity_before(self) -> int:
        return self.quantity_after - self.quantity_change
