"""
Django Admin configuration for inventory models.

Stock quantities are read-only here; corrections go through the adjust
endpoint so the ledger broadcasts them.
"""
from django.contrib import admin
from .models import Product, StockMovement, Store


class ProductInline(admin.TabularInline):
    model = Product
    extra = 0
    fields = ['name', 'price', 'quantity', 'reserved_quantity', 'available_quantity', 'is_active']
    readonly_fields = ['quantity', 'reserved_quantity', 'available_quantity']
    show_change_link = True


@admin.register(Store)
class StoreAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'slug', 'location', 'is_active', 'product_count', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'slug', 'location']
    prepopulated_fields = {'slug': ['name']}
    ordering = ['name']
    inlines = [ProductInline]

    def product_count(self, obj):
        return obj.products.count()
    product_count.short_description = 'Products'


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'name', 'store', 'price', 'discount_price',
        'quantity', 'reserved_quantity', 'available_quantity', 'is_low_stock', 'is_active'
    ]
    list_filter = ['store', 'category', 'is_active']
    search_fields = ['name', 'sku', 'category']
    ordering = ['store', 'name']
    raw_id_fields = ['store']
    readonly_fields = ['quantity', 'reserved_quantity', 'available_quantity', 'created_at', 'updated_at']

    def is_low_stock(self, obj):
        return obj.is_low_stock
    is_low_stock.boolean = True
    is_low_stock.short_description = 'Low Stock'


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'created_at', 'store', 'product_name', 'action',
        'quantity_change', 'available_change', 'available_after', 'reference'
    ]
    list_filter = ['store', 'action', 'created_at']
    search_fields = ['product_name', 'reason', 'reference']
    ordering = ['-created_at']
    date_hierarchy = 'created_at'

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
