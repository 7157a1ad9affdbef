"""
Order Models - Sales, their lines, payments and history, plus carts.

Sale status dimensions (independent of each other):
    status:          ACTIVE -> COMPLETED | CANCELLED (REFUNDED reserved for returns)
    payment_status:  PENDING -> PARTIAL -> PAID   (overdue is derived, never stored)
    approval_status: PENDING -> APPROVED | REJECTED   (public shop orders)

Stock for every line is committed when the sale is created, not when it is
paid.
"""
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from inventory.models import Store, Product


class Customer(models.Model):
    """Public shop customer, scoped to one store."""
    store = models.ForeignKey(Store, on_delete=models.CASCADE, related_name='customers')
    name = models.CharField(max_length=100)
    custom_id = models.CharField(max_length=32, blank=True, default='')
    phone = models.CharField(max_length=32, blank=True, default='')
    email = models.EmailField(blank=True, default='')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.store.name})"


class Sale(models.Model):
    """
    A sale/order placed at a POS terminal or through the public shop.

    Line prices are snapshotted at order time in ``SaleItem``.
    """

    class Status(models.TextChoices):
        ACTIVE = 'active', 'Active'
        COMPLETED = 'completed', 'Completed'
        CANCELLED = 'cancelled', 'Cancelled'
        REFUNDED = 'refunded', 'Refunded'

    class PaymentStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PARTIAL = 'partial', 'Partial'
        PAID = 'paid', 'Paid'

    class ApprovalStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        APPROVED = 'approved', 'Approved'
        REJECTED = 'rejected', 'Rejected'

    class PaymentMethod(models.TextChoices):
        CASH = 'cash', 'Cash'
        CARD = 'card', 'Card'
        DIGITAL = 'digital', 'Digital'
        MIXED = 'mixed', 'Mixed'

    class Source(models.TextChoices):
        POS = 'pos', 'Point of sale'
        PUBLIC = 'public', 'Public shop'

    OVERDUE = 'overdue'

    store = models.ForeignKey(
        Store,
        on_delete=models.CASCADE,
        related_name='sales',
        help_text="Store where the sale was placed"
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='sales'
    )
    source = models.CharField(max_length=10, choices=Source.choices, default=Source.POS)
    cashier = models.CharField(max_length=100, blank=True, default='')
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE,
        db_index=True
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    approval_status = models.CharField(
        max_length=20,
        choices=ApprovalStatus.choices,
        default=ApprovalStatus.APPROVED,
        db_index=True
    )
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.CASH
    )
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    tax = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    discount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    final_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    amount_due = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    due_date = models.DateTimeField(null=True, blank=True, db_index=True)
    customer_name = models.CharField(max_length=100, blank=True, default='')
    customer_phone = models.CharField(max_length=32, blank=True, default='')
    customer_email = models.EmailField(blank=True, default='')
    notes = models.TextField(blank=True, default='')
    approved_by = models.CharField(max_length=100, blank=True, default='')
    approved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Sale'
        verbose_name_plural = 'Sales'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['store', 'created_at']),
            models.Index(fields=['store', 'payment_status']),
            models.Index(fields=['store', 'approval_status']),
        ]

    def __str__(self):
        return f"Sale #{self.id} - {self.store.name} ({self.status}/{self.payment_status})"

    @property
    def is_overdue(self) -> bool:
        return (
            self.due_date is not None
            and self.due_date < timezone.now()
            and self.payment_status != self.PaymentStatus.PAID
        )

    @property
    def display_payment_status(self) -> str:
        return self.OVERDUE if self.is_overdue else self.payment_status

    @property
    def age(self) -> timedelta:
        return timezone.now() - self.created_at

    @property
    def within_delete_window(self) -> bool:
        hours = getattr(settings, 'ORDER_DELETE_WINDOW_HOURS', 24)
        return self.age <= timedelta(hours=hours)


class SaleItem(models.Model):
    """
    A sale line with the product name and unit price at order time.
    """
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='sale_items'
    )
    product_name = models.CharField(max_length=100)
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product_name} @ ${self.unit_price}"


class Payment(models.Model):
    """Append-only payment record; ``Sale.amount_paid`` is their sum."""
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name='payments')
    amount = models.DecimalField(
        max_digits=12, decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    method = models.CharField(
        max_length=20,
        choices=[c for c in Sale.PaymentMethod.choices if c[0] != Sale.PaymentMethod.MIXED]
    )
    notes = models.CharField(max_length=255, blank=True, default='')
    cashier = models.CharField(max_length=100, blank=True, default='')
    date = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['date', 'id']

    def __str__(self):
        return f"${self.amount} {self.method} on sale #{self.sale_id}"


class SaleModification(models.Model):
    """One human-readable entry per mutating action on a sale."""
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name='modifications')
    action = models.CharField(max_length=40)
    changes = models.TextField()
    actor = models.CharField(max_length=100, blank=True, default='')
    timestamp = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"{self.action} on sale #{self.sale_id}"


def default_cart_expiry():
    return timezone.now() + timedelta(hours=getattr(settings, 'CART_TTL_HOURS', 24))


class Cart(models.Model):
    """
    Stock held for a cashier terminal or a shop customer.

    ``owner_key`` is ``cashier:<name>`` or ``customer:<id>``.
    """
    store = models.ForeignKey(Store, on_delete=models.CASCADE, related_name='carts')
    owner_key = models.CharField(max_length=120)
    expires_at = models.DateTimeField(default=default_cart_expiry, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['store', 'owner_key'], name='unique_cart_per_owner')
        ]

    def __str__(self):
        return f"Cart {self.owner_key} @ {self.store.name}"

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= timezone.now()


class CartItem(models.Model):
    """Units of one product currently reserved for a cart."""
    cart = models.ForeignKey(Cart, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='cart_items')
    product_name = models.CharField(max_length=100)
    quantity = models.PositiveIntegerField(default=0)
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    reserved_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['id']
        constraints = [
            models.UniqueConstraint(fields=['cart', 'product'], name='unique_cart_product')
        ]

    def __str__(self):
        return f"{self.quantity}x {self.product_name}"

    @property
    def total_price(self) -> Decimal:
        return self.quantity * self.unit_price
