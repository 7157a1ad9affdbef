"""
Serializers for inventory models.
Provides data validation and JSON conversion for API endpoints.

Stock quantities are read-only everywhere; they change only through the
ledger-backed endpoints (adjust, reserve, orders).
"""
from rest_framework import serializers
from .models import Product, StockMovement, Store


class StoreSerializer(serializers.ModelSerializer):
    """Serializer for Store model."""
    product_count = serializers.SerializerMethodField()

    class Meta:
        model = Store
        fields = ['id', 'name', 'slug', 'location', 'is_active', 'product_count', 'created_at', 'updated_at']
        read_only_fields = ['id', 'created_at', 'updated_at']

    def get_product_count(self, obj):
        """Get count of active products in this store."""
        return obj.products.filter(is_active=True).count()


class StoreMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested store representation."""
    class Meta:
        model = Store
        fields = ['id', 'name', 'location']


class ProductSerializer(serializers.ModelSerializer):
    """
    Serializer for Product model.

    ``initial_quantity`` is accepted on create only and booked through the
    ledger as a stock adjustment.
    """
    initial_quantity = serializers.IntegerField(min_value=0, required=False, default=0, write_only=True)
    effective_price = serializers.DecimalField(max_digits=10, decimal_places=2, read_only=True)
    is_low_stock = serializers.BooleanField(read_only=True)
    is_out_of_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'name', 'sku', 'category', 'description',
            'price', 'discount_price', 'effective_price', 'cost',
            'quantity', 'reserved_quantity', 'available_quantity', 'initial_quantity',
            'low_stock_threshold', 'is_low_stock', 'is_out_of_stock',
            'is_active', 'created_at', 'updated_at'
        ]
        read_only_fields = [
            'id', 'quantity', 'reserved_quantity', 'available_quantity',
            'created_at', 'updated_at'
        ]

    def validate(self, attrs):
        price = attrs.get('price', getattr(self.instance, 'price', None))
        discount_price = attrs.get('discount_price', getattr(self.instance, 'discount_price', None))
        if discount_price and price is not None and discount_price >= price:
            raise serializers.ValidationError(
                {'discount_price': 'Discount price must be less than the regular price'}
            )
        if self.instance is not None and attrs.get('initial_quantity'):
            raise serializers.ValidationError(
                {'initial_quantity': 'Use the adjust endpoint to change stock of an existing product'}
            )
        return attrs


class ProductPublicSerializer(serializers.ModelSerializer):
    """Product as shown to public shop customers."""
    effective_price = serializers.DecimalField(max_digits=10, decimal_places=2, read_only=True)
    is_out_of_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'name', 'category', 'description', 'price', 'discount_price',
            'effective_price', 'available_quantity', 'is_out_of_stock'
        ]


class ProductMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested representations."""
    class Meta:
        model = Product
        fields = ['id', 'name', 'price']


class StockAdjustSerializer(serializers.Serializer):
    delta = serializers.IntegerField()
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')

    def validate_delta(self, value):
        if value == 0:
            raise serializers.ValidationError("Adjustment must be non-zero")
        return value


class ReservationSerializer(serializers.Serializer):
    """
    Cart reservation request.

    Request format:
    {
        "productId": 1,
        "quantity": 2,
        "action": "reserve"     // reserve | release | set
    }
    """
    ACTIONS = ('reserve', 'release', 'set')

    productId = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=0)
    action = serializers.ChoiceField(choices=ACTIONS, default='reserve')

    def validate(self, attrs):
        if attrs['action'] != 'set' and attrs['quantity'] < 1:
            raise serializers.ValidationError({'quantity': 'Quantity must be at least 1'})
        return attrs


class StockMovementSerializer(serializers.ModelSerializer):
    """Audit trail row; the ``*_before`` values are derived from the changes."""
    quantity_before = serializers.IntegerField(read_only=True)
    available_before = serializers.IntegerField(read_only=True)

    class Meta:
        model = StockMovement
        fields = [
            'id', 'product', 'product_name', 'action',
            'quantity_change', 'quantity_before', 'quantity_after',
            'available_change', 'available_before', 'available_after', 'reserved_after',
            'reason', 'reference', 'created_at'
        ]
        read_only_fields = fields
