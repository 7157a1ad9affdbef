"""
Serializers for sale, payment and cart models.
"""
from decimal import Decimal

from rest_framework import serializers

from inventory.serializers import StoreMinimalSerializer
from .models import Cart, CartItem, Payment, Sale, SaleItem, SaleModification

PAYMENT_METHOD_CHOICES = [c for c in Sale.PaymentMethod.choices if c[0] != Sale.PaymentMethod.MIXED]
MONEY_FIELD = dict(max_digits=12, decimal_places=2, min_value=Decimal('0.00'))


class SaleItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = SaleItem
        fields = ['id', 'product_id', 'product_name', 'quantity', 'unit_price', 'total_price']


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = ['id', 'amount', 'method', 'notes', 'cashier', 'date']


class SaleModificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = SaleModification
        fields = ['id', 'action', 'changes', 'actor', 'timestamp']


class SaleSerializer(serializers.ModelSerializer):
    """
    Full sale with lines, payments and modification history.
    Views prefetch the related rows.
    """
    store = StoreMinimalSerializer(read_only=True)
    items = SaleItemSerializer(many=True, read_only=True)
    payments = PaymentSerializer(many=True, read_only=True)
    modifications = SaleModificationSerializer(many=True, read_only=True)
    display_payment_status = serializers.CharField(read_only=True)
    is_overdue = serializers.BooleanField(read_only=True)

    class Meta:
        model = Sale
        fields = [
            'id', 'store', 'customer', 'source', 'cashier',
            'status', 'payment_status', 'display_payment_status', 'is_overdue',
            'approval_status', 'approved_by', 'approved_at', 'payment_method',
            'subtotal', 'tax', 'discount', 'final_amount', 'amount_paid', 'amount_due',
            'due_date', 'customer_name', 'customer_phone', 'customer_email', 'notes',
            'items', 'payments', 'modifications', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class SaleListSerializer(serializers.ModelSerializer):
    """
    Lighter serializer for listing sales.
    """
    display_payment_status = serializers.CharField(read_only=True)
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Sale
        fields = [
            'id', 'source', 'cashier', 'status', 'payment_status', 'display_payment_status',
            'approval_status', 'payment_method', 'final_amount', 'amount_paid', 'amount_due',
            'due_date', 'customer_name', 'item_count', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class SaleItemInputSerializer(serializers.Serializer):
    """A requested order line."""
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


def _unique_products(value):
    if not value:
        raise serializers.ValidationError("At least one item is required")
    product_ids = [item['product_id'] for item in value]
    if len(product_ids) != len(set(product_ids)):
        raise serializers.ValidationError("Duplicate products in order items")
    return value


class ContactFieldsSerializer(serializers.Serializer):
    customer_name = serializers.CharField(max_length=100, required=False, allow_blank=True)
    customer_phone = serializers.CharField(max_length=32, required=False, allow_blank=True)
    customer_email = serializers.EmailField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    due_date = serializers.DateTimeField(required=False, allow_null=True)


class SaleCreateSerializer(ContactFieldsSerializer):
    """
    Serializer for creating sales via POST /sales/

    Request format:
    {
        "items": [
            {"product_id": 1, "quantity": 2},
            {"product_id": 3, "quantity": 1}
        ],
        "tax": "0.00",
        "discount": "0.00",
        "amount_paid": "50.00",
        "payment_method": "cash"
    }
    """
    items = SaleItemInputSerializer(many=True)
    tax = serializers.DecimalField(required=False, default=Decimal('0.00'), **MONEY_FIELD)
    discount = serializers.DecimalField(required=False, default=Decimal('0.00'), **MONEY_FIELD)
    amount_paid = serializers.DecimalField(required=False, default=Decimal('0.00'), **MONEY_FIELD)
    payment_method = serializers.ChoiceField(choices=PAYMENT_METHOD_CHOICES, default=Sale.PaymentMethod.CASH)
    use_cart = serializers.BooleanField(required=False, default=True)

    def validate_items(self, value):
        return _unique_products(value)


class SaleUpdateSerializer(ContactFieldsSerializer):
    """
    PUT /sales/<id>/ payload; ``action`` selects the lifecycle transition.
    """
    ACTIONS = (
        'add_payment',
        'update_items',
        'update_order_details',
        'update_general',
        'cancel',
        'reactivate',
    )

    action = serializers.ChoiceField(choices=ACTIONS, default='update_general')
    amount = serializers.DecimalField(required=False, **MONEY_FIELD)
    payment_method = serializers.ChoiceField(choices=PAYMENT_METHOD_CHOICES, default=Sale.PaymentMethod.CASH)
    items = SaleItemInputSerializer(many=True, required=False)
    tax = serializers.DecimalField(required=False, **MONEY_FIELD)
    discount = serializers.DecimalField(required=False, **MONEY_FIELD)

    def validate(self, attrs):
        action = attrs['action']
        if action == 'add_payment' and 'amount' not in attrs:
            raise serializers.ValidationError({'amount': 'Payment amount is required'})
        if action == 'update_items':
            if 'items' not in attrs:
                raise serializers.ValidationError({'items': 'Items are required'})
            _unique_products(attrs['items'])
        return attrs


class PublicOrderCreateSerializer(ContactFieldsSerializer):
    """
    Public shop order. Without ``items`` the customer's cart becomes the order.
    """
    items = SaleItemInputSerializer(many=True, required=False)

    def validate_items(self, value):
        return _unique_products(value)


class ApprovalSerializer(serializers.Serializer):
    orderId = serializers.IntegerField(min_value=1)
    action = serializers.ChoiceField(choices=('approve', 'reject'))
    cashier = serializers.CharField(max_length=100, required=False, allow_blank=True)
    amount_paid = serializers.DecimalField(required=False, **MONEY_FIELD)
    payment_method = serializers.ChoiceField(choices=PAYMENT_METHOD_CHOICES, default=Sale.PaymentMethod.CASH)
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class CartItemSerializer(serializers.ModelSerializer):
    total_price = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    available_quantity = serializers.IntegerField(source='product.available_quantity', read_only=True)

    class Meta:
        model = CartItem
        fields = [
            'id', 'product_id', 'product_name', 'quantity', 'unit_price',
            'total_price', 'available_quantity', 'reserved_at'
        ]


class CartSerializer(serializers.ModelSerializer):
    items = CartItemSerializer(many=True, read_only=True)
    total = serializers.SerializerMethodField()

    class Meta:
        model = Cart
        fields = ['id', 'owner_key', 'items', 'total', 'expires_at', 'updated_at']

    def get_total(self, obj):
        return str(sum((item.total_price for item in obj.items.all()), Decimal('0.00')))
