"""
Django Admin configuration for sale, customer and cart models.
"""
from django.contrib import admin
from .models import Cart, CartItem, Customer, Payment, Sale, SaleItem, SaleModification


class SaleItemInline(admin.TabularInline):
    model = SaleItem
    extra = 0
    readonly_fields = ['product', 'product_name', 'quantity', 'unit_price', 'total_price']
    can_delete = False


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    readonly_fields = ['amount', 'method', 'notes', 'cashier', 'date']
    can_delete = False


class SaleModificationInline(admin.TabularInline):
    model = SaleModification
    extra = 0
    readonly_fields = ['action', 'changes', 'actor', 'timestamp']
    can_delete = False


@admin.register(Sale)
class SaleAdmin(admin.ModelAdmin):
    """Read-mostly view; lifecycle changes go through the API so stock follows."""
    list_display = [
        'id', 'store', 'source', 'status', 'payment_status', 'approval_status',
        'final_amount', 'amount_due', 'item_count', 'created_at'
    ]
    list_filter = ['status', 'payment_status', 'approval_status', 'source', 'store', 'created_at']
    search_fields = ['id', 'customer_name', 'customer_phone', 'cashier', 'store__name']
    ordering = ['-created_at']
    readonly_fields = [
        'status', 'payment_status', 'approval_status', 'subtotal', 'final_amount',
        'amount_paid', 'amount_due', 'approved_by', 'approved_at', 'created_at', 'updated_at'
    ]
    inlines = [SaleItemInline, PaymentInline, SaleModificationInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'store', 'custom_id', 'phone', 'email', 'is_active']
    list_filter = ['store', 'is_active']
    search_fields = ['name', 'custom_id', 'phone', 'email']
    raw_id_fields = ['store']


class CartItemInline(admin.TabularInline):
    model = CartItem
    extra = 0
    readonly_fields = ['product', 'product_name', 'quantity', 'unit_price', 'reserved_at']
    can_delete = False


@admin.register(Cart)
class CartAdmin(admin.ModelAdmin):
    list_display = ['id', 'store', 'owner_key', 'expires_at', 'updated_at']
    list_filter = ['store']
    search_fields = ['owner_key']
    readonly_fields = ['owner_key', 'expires_at', 'created_at', 'updated_at']
    inlines = [CartItemInline]
