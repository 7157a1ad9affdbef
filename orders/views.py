"""
Sale/Order API Views.

Implements:
- GET /sales/ - List sales with filters
- POST /sales/ - Create a POS sale, consuming the cashier cart's holds
- GET/PUT/DELETE /sales/{id}/ - Detail, lifecycle actions, deletion
- GET /sales/stats/ - Store sales statistics
- GET/POST /orders/public/ - Public shop orders for the signed-in customer
- POST /orders/approve/ - Approve or reject a public order
- GET/DELETE /cart/, POST /cart/release/ - Cart inspection and release
"""
import logging

from django.db.models import Avg, Count, Q, Sum
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework import generics, status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from core.authentication import IsCustomerAuthenticated, IsStoreAuthenticated, IsStoreOrCustomer
from core.exceptions import DomainError, NotFoundError, OrderValidationError
from .carts import CartService
from .models import Cart, Sale
from .serializers import (
    ApprovalSerializer,
    CartSerializer,
    PublicOrderCreateSerializer,
    SaleCreateSerializer,
    SaleListSerializer,
    SaleSerializer,
    SaleUpdateSerializer,
)
from .services import CONTACT_FIELDS, OrderLifecycle

logger = logging.getLogger(__name__)

SORT_FIELDS = {'created_at', 'final_amount', 'amount_due', 'due_date', 'customer_name'}


def _detail_queryset():
    return Sale.objects.select_related('store').prefetch_related('items', 'payments', 'modifications')


def _contact(data) -> dict:
    return {field: data[field] for field in CONTACT_FIELDS if field in data}


def _get_sale(queryset, pk) -> Sale:
    sale = queryset.filter(pk=pk).first()
    if sale is None:
        raise NotFoundError(f"Sale not found: {pk}")
    return sale


def _respond(sale: Sale, status_code=status.HTTP_200_OK) -> Response:
    # Fetch fresh sale with all relations
    sale = _detail_queryset().get(pk=sale.pk)
    return Response(SaleSerializer(sale).data, status=status_code)


class SaleListCreateView(generics.ListCreateAPIView):
    """
    GET: List the store's sales
    POST: Create a sale

    Query Parameters (GET):
        - start_date / end_date: Creation date range (YYYY-MM-DD)
        - payment_method: cash, card, digital, mixed
        - payment_status: pending, partial, paid, overdue
        - status: active, completed, cancelled, refunded
        - approval_status: pending, approved, rejected
        - source: pos, public
        - search: Customer name/phone, cashier, notes or sale id
        - sort: Field name, prefixed with '-' for descending
    """
    permission_classes = [IsStoreAuthenticated]

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return SaleCreateSerializer
        return SaleListSerializer

    def get_queryset(self):
        queryset = Sale.objects.filter(store=self.request.user.store).prefetch_related('items')
        params = self.request.query_params

        start_date = parse_date(params.get('start_date', '') or '')
        if start_date:
            queryset = queryset.filter(created_at__date__gte=start_date)
        end_date = parse_date(params.get('end_date', '') or '')
        if end_date:
            queryset = queryset.filter(created_at__date__lte=end_date)

        payment_method = params.get('payment_method')
        if payment_method in Sale.PaymentMethod.values:
            queryset = queryset.filter(payment_method=payment_method)

        # Overdue is derived: past due date and not fully paid
        overdue = Q(due_date__lt=timezone.now()) & ~Q(payment_status=Sale.PaymentStatus.PAID)
        payment_status = params.get('payment_status')
        if payment_status == Sale.OVERDUE:
            queryset = queryset.filter(overdue)
        elif payment_status in Sale.PaymentStatus.values:
            queryset = queryset.filter(payment_status=payment_status).exclude(overdue)

        for field, choices in (
            ('status', Sale.Status.values),
            ('approval_status', Sale.ApprovalStatus.values),
            ('source', Sale.Source.values),
        ):
            value = params.get(field)
            if value in choices:
                queryset = queryset.filter(**{field: value})

        search = params.get('search', '').strip()
        if search:
            match = (
                Q(customer_name__icontains=search) |
                Q(customer_phone__icontains=search) |
                Q(cashier__icontains=search) |
                Q(notes__icontains=search)
            )
            if search.isdigit():
                match |= Q(pk=int(search))
            queryset = queryset.filter(match)

        sort = params.get('sort', '-created_at')
        if sort.lstrip('-') not in SORT_FIELDS:
            sort = '-created_at'
        return queryset.order_by(sort, '-id')

    def create(self, request, *args, **kwargs):
        """
        Create a sale; stock for every line is committed immediately.

        Returns:
            - 201: Sale created
            - 400: Validation error or insufficient stock
            - 404: Products not found in this store
        """
        serializer = SaleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        lifecycle = OrderLifecycle()
        store = request.user.store
        cart = None
        if data['use_cart']:
            cart = lifecycle.carts.get_cart(store, request.user.cart_owner)

        sale = lifecycle.create_order(
            store,
            data['items'],
            cart=cart,
            source=Sale.Source.POS,
            cashier=request.user.selected_cashier or '',
            tax=data['tax'],
            discount=data['discount'],
            amount_paid=data['amount_paid'],
            payment_method=data['payment_method'],
            **_contact(data)
        )
        return _respond(sale, status.HTTP_201_CREATED)


class SaleDetailView(APIView):
    """
    GET: Sale with lines, payments and history
    PUT: Lifecycle action selected by ``action``
    DELETE: Remove an unpaid sale inside the delete window

    PUT Request Body:
    {
        "action": "add_payment",      // add_payment | update_items |
        "amount": "25.00",            // update_order_details | update_general |
        "payment_method": "card"      // cancel | reactivate
    }
    """
    permission_classes = [IsStoreAuthenticated]

    def get_queryset(self):
        return _detail_queryset().filter(store=self.request.user.store)

    def get(self, request, pk):
        sale = _get_sale(self.get_queryset(), pk)
        return Response(SaleSerializer(sale).data)

    def put(self, request, pk):
        sale = _get_sale(self.get_queryset(), pk)
        serializer = SaleUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        lifecycle = OrderLifecycle()
        actor = request.user.selected_cashier or ''
        action = data['action']

        if action == 'add_payment':
            sale = lifecycle.add_payment(
                sale, data['amount'], data['payment_method'], data.get('notes', ''), actor
            )
        elif action == 'update_items':
            sale = lifecycle.update_items(
                sale, data['items'], tax=data.get('tax'), discount=data.get('discount'),
                actor=actor, **_contact(data)
            )
        elif action == 'update_order_details':
            sale = lifecycle.update_order_details(
                sale, actor=actor, tax=data.get('tax'), discount=data.get('discount'), **_contact(data)
            )
        elif action == 'cancel':
            sale = lifecycle.cancel(sale, actor=actor)
        elif action == 'reactivate':
            sale = lifecycle.reactivate(sale, actor=actor)
        else:
            sale = lifecycle.update_general(sale, actor=actor, **_contact(data))

        logger.info(f"Sale #{sale.pk}: {action} by {actor or 'store'}")
        return _respond(sale)

    def delete(self, request, pk):
        sale = _get_sale(self.get_queryset(), pk)
        OrderLifecycle().delete(sale, actor=request.user.selected_cashier or '')
        return Response(status=status.HTTP_204_NO_CONTENT)


class SaleStatsView(APIView):
    """
    GET: Sales statistics for the authenticated store.

    Query Parameters:
        - start_date / end_date: Creation date range (optional)
    """
    permission_classes = [IsStoreAuthenticated]

    def get(self, request):
        queryset = Sale.objects.filter(store=request.user.store)

        start_date = parse_date(request.query_params.get('start_date', '') or '')
        if start_date:
            queryset = queryset.filter(created_at__date__gte=start_date)
        end_date = parse_date(request.query_params.get('end_date', '') or '')
        if end_date:
            queryset = queryset.filter(created_at__date__lte=end_date)

        live = ~Q(status=Sale.Status.CANCELLED)
        stats = queryset.aggregate(
            total_orders=Count('id'),
            active_orders=Count('id', filter=Q(status=Sale.Status.ACTIVE)),
            completed_orders=Count('id', filter=Q(status=Sale.Status.COMPLETED)),
            cancelled_orders=Count('id', filter=Q(status=Sale.Status.CANCELLED)),
            pending_approval=Count('id', filter=Q(approval_status=Sale.ApprovalStatus.PENDING) & live),
            overdue_orders=Count(
                'id',
                filter=Q(due_date__lt=timezone.now()) & ~Q(payment_status=Sale.PaymentStatus.PAID) & live
            ),
            total_revenue=Sum('final_amount', filter=live),
            total_collected=Sum('amount_paid', filter=live),
            total_outstanding=Sum('amount_due', filter=live),
            avg_order_value=Avg('final_amount', filter=live),
        )

        # Handle None values
        for key in ('total_revenue', 'total_collected', 'total_outstanding'):
            stats[key] = str(stats[key] or '0.00')
        stats['avg_order_value'] = str(round(stats['avg_order_value'] or 0, 2))

        return Response(stats)


class PublicOrderListCreateView(APIView):
    """
    GET: The signed-in customer's orders
    POST: Place an order from ``items`` or, without items, from the cart

    Public orders await approval by a cashier; their stock is committed on
    creation.
    """
    permission_classes = [IsCustomerAuthenticated]

    def get(self, request):
        sales = _detail_queryset().filter(store=request.user.store, customer=request.user.customer)
        return Response(SaleSerializer(sales, many=True).data)

    def post(self, request):
        serializer = PublicOrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        store = request.user.store
        customer = request.user.customer
        lifecycle = OrderLifecycle()
        cart = lifecycle.carts.get_cart(store, request.user.cart_owner)

        items = data.get('items')
        if not items:
            held = lifecycle.carts.held_quantities(cart) if cart else {}
            if not held:
                raise OrderValidationError("Cart is empty")
            items = [{'product_id': pid, 'quantity': qty} for pid, qty in held.items()]

        contact = _contact(data)
        contact.setdefault('customer_name', customer.name)
        contact.setdefault('customer_phone', customer.phone)
        contact.setdefault('customer_email', customer.email)

        sale = lifecycle.create_order(
            store,
            items,
            cart=cart,
            source=Sale.Source.PUBLIC,
            customer=customer,
            **contact
        )
        return _respond(sale, status.HTTP_201_CREATED)


class PublicOrderDetailView(APIView):
    permission_classes = [IsCustomerAuthenticated]

    def get(self, request, pk):
        queryset = _detail_queryset().filter(store=request.user.store, customer=request.user.customer)
        return Response(SaleSerializer(_get_sale(queryset, pk)).data)


class OrderApprovalView(APIView):
    """
    POST: Approve or reject a pending public order.

    Request Body:
    {
        "orderId": 12,
        "action": "approve",         // approve | reject
        "cashier": "Maria",          // defaults to the signed-in cashier
        "amount_paid": "10.00",      // optional payment taken on approval
        "notes": ""
    }
    """
    permission_classes = [IsStoreAuthenticated]

    def post(self, request):
        serializer = ApprovalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        sale = _get_sale(Sale.objects.filter(store=request.user.store), data['orderId'])
        cashier = data.get('cashier') or request.user.selected_cashier or ''
        lifecycle = OrderLifecycle()

        if data['action'] == 'approve':
            sale = lifecycle.approve(
                sale, cashier,
                amount_paid=data.get('amount_paid'),
                payment_method=data['payment_method'],
                notes=data['notes']
            )
        else:
            sale = lifecycle.reject(sale, cashier, notes=data['notes'])
        return _respond(sale)


class CartView(APIView):
    """
    GET: The caller's cart (cashier terminal or shop customer)
    DELETE: Release everything the cart holds
    """
    permission_classes = [IsStoreOrCustomer]

    def get(self, request):
        cart = (
            Cart.objects.filter(store=request.user.store, owner_key=request.user.cart_owner)
            .prefetch_related('items__product')
            .first()
        )
        if cart is None:
            return Response({'owner_key': request.user.cart_owner, 'items': [], 'total': '0.00'})
        return Response(CartSerializer(cart).data)

    def delete(self, request):
        carts = CartService()
        cart = carts.get_cart(request.user.store, request.user.cart_owner)
        released = carts.release_cart(cart) if cart else 0
        return Response({'success': True, 'released': released})


class CartReleaseView(APIView):
    """
    POST: Page-unload beacon; releases the caller's cart.

    Always answers 204 so browsers never retry; a repeated beacon finds no
    cart and releases nothing.
    """
    permission_classes = [AllowAny]

    def post(self, request):
        user = request.user
        if not getattr(user, 'cart_owner', None):
            return Response(status=status.HTTP_204_NO_CONTENT)

        carts = CartService()
        cart = carts.get_cart(user.store, user.cart_owner)
        if cart is not None:
            try:
                carts.release_cart(cart)
            except DomainError as e:
                logger.warning(f"Beacon release of cart {user.cart_owner} failed: {e}")
        return Response(status=status.HTTP_204_NO_CONTENT)
