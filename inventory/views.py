"""
Inventory API Views.

Implements:
- CRUD operations for Store and Product (store scoped)
- Stock adjustment through the ledger
- Cart reservations for customers and cashiers, with rate limiting
- Polling and Server-Sent Events views of live stock levels
"""
import json
import logging

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.db.models import F, Q
from django.http import StreamingHttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework import generics, status
from rest_framework.permissions import IsAdminUser
from rest_framework.renderers import BaseRenderer, JSONRenderer
from rest_framework.response import Response
from rest_framework.views import APIView

from core.authentication import IsCustomerAuthenticated, IsStoreAuthenticated, IsStoreOrCustomer
from core.exceptions import InvalidTransitionError, OrderValidationError
from core.rate_limiting import RateLimitMixin, rate_limit
from core.realtime import (
    INVENTORY_CHANGED,
    PRODUCT_DELETED,
    get_broadcaster,
    make_event,
    safe_publish,
    store_channel,
)
from .ledger import StockLedger
from .models import Product, StockMovement, Store
from .serializers import (
    ProductPublicSerializer,
    ProductSerializer,
    ReservationSerializer,
    StockAdjustSerializer,
    StockMovementSerializer,
    StoreSerializer,
)

logger = logging.getLogger(__name__)


def parse_product_ids(raw) -> list:
    """Parse a ``1,2,3`` query parameter."""
    if not raw:
        return []
    try:
        return [int(part) for part in raw.split(',') if part.strip()]
    except ValueError:
        raise OrderValidationError(f"Invalid product id list: {raw}")


# =============================================================================
# Store Views
# =============================================================================

class StoreListCreateView(generics.ListCreateAPIView):
    """
    GET: List all stores
    POST: Create a new store

    Staff only (Django admin session).
    """
    queryset = Store.objects.filter(is_active=True)
    serializer_class = StoreSerializer
    permission_classes = [IsAdminUser]


class StoreDetailView(generics.RetrieveUpdateAPIView):
    """
    GET: Retrieve the authenticated store
    PUT/PATCH: Update it
    """
    serializer_class = StoreSerializer
    permission_classes = [IsStoreAuthenticated]

    def get_queryset(self):
        return Store.objects.filter(pk=self.request.user.store.pk)


# =============================================================================
# Product Views
# =============================================================================

class ProductListCreateView(generics.ListCreateAPIView):
    """
    GET: List the store's products
    POST: Create a product, optionally with initial stock

    Query Parameters:
        - q: Keyword to search in name, sku and category
        - category: Exact category filter
        - low_stock: Show only low stock items (true/false)
        - include_inactive: Include deactivated products (true/false)
    """
    serializer_class = ProductSerializer
    permission_classes = [IsStoreAuthenticated]

    def get_queryset(self):
        queryset = Product.objects.filter(store=self.request.user.store)
        params = self.request.query_params

        if params.get('include_inactive', '').lower() != 'true':
            queryset = queryset.filter(is_active=True)

        keyword = params.get('q', '').strip()
        if keyword:
            queryset = queryset.filter(
                Q(name__icontains=keyword) |
                Q(sku__icontains=keyword) |
                Q(category__icontains=keyword)
            )

        category = params.get('category')
        if category:
            queryset = queryset.filter(category=category)

        if params.get('low_stock', '').lower() == 'true':
            queryset = queryset.filter(available_quantity__lte=F('low_stock_threshold'))

        return queryset.order_by('name')

    def perform_create(self, serializer):
        store = self.request.user.store
        initial_quantity = serializer.validated_data.pop('initial_quantity', 0)
        with transaction.atomic():
            product = serializer.save(store=store)
            if initial_quantity:
                StockLedger().adjust(product.pk, initial_quantity, store_id=store.pk, reason='Initial stock')
                product.refresh_from_db()
        logger.info(f"Product {product.pk} '{product.name}' created at store {store.pk} with {initial_quantity} units")


class ProductDetailView(generics.RetrieveUpdateDestroyAPIView):
    """
    GET: Retrieve a product
    PUT/PATCH: Update a product (quantities are read-only)
    DELETE: Delete a product with no sales history
    """
    serializer_class = ProductSerializer
    permission_classes = [IsStoreAuthenticated]

    def get_queryset(self):
        return Product.objects.filter(store=self.request.user.store)

    def perform_update(self, serializer):
        serializer.validated_data.pop('initial_quantity', None)
        serializer.save()

    def perform_destroy(self, instance):
        if instance.sale_items.exists():
            raise InvalidTransitionError(
                f"Product '{instance.name}' is referenced by sales; deactivate it instead"
            )
        product_id, store_id = instance.pk, instance.store_id
        with transaction.atomic():
            instance.delete()
            transaction.on_commit(lambda: safe_publish(
                get_broadcaster(), store_channel(store_id),
                make_event(PRODUCT_DELETED, productId=product_id)
            ))
        logger.info(f"Product {product_id} deleted from store {store_id}")


class ProductPublicListView(generics.ListAPIView):
    """
    GET: Active products of the customer's store with live availability.
    """
    serializer_class = ProductPublicSerializer
    permission_classes = [IsCustomerAuthenticated]

    @rate_limit(max_requests=120, window_seconds=60)
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)

    def get_queryset(self):
        queryset = Product.objects.filter(store=self.request.user.store, is_active=True)
        keyword = self.request.query_params.get('q', '').strip()
        if keyword:
            queryset = queryset.filter(Q(name__icontains=keyword) | Q(category__icontains=keyword))
        return queryset.order_by('name')


class ProductAdjustView(APIView):
    """
    POST: Manual stock correction.

    Request Body:
    {
        "delta": 10,          // positive receives stock, negative removes it
        "reason": "Delivery"
    }
    """
    permission_classes = [IsStoreAuthenticated]

    def post(self, request, pk):
        serializer = StockAdjustSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        store = request.user.store
        delta = serializer.validated_data['delta']
        actor = request.user.selected_cashier or 'store'
        snapshot = StockLedger().adjust(
            pk, delta, store_id=store.pk,
            reason=serializer.validated_data['reason'], reference=f'cashier {actor}'
        )
        logger.info(
            f"Stock adjustment {delta:+d} on product {pk} by "
            f"{actor}: {serializer.validated_data['reason'] or 'no reason'}"
        )
        return Response({'success': True, **snapshot.as_payload()})


class StockMovementListView(generics.ListAPIView):
    """
    GET: Stock audit trail of the caller's store, newest first.

    Query Parameters:
        - product: Product id
        - action: reservation, release, sale, restore, restock, adjustment
        - start_date / end_date: Date range (YYYY-MM-DD)
        - search: Product name, reason or reference
    """
    serializer_class = StockMovementSerializer
    permission_classes = [IsStoreAuthenticated]

    def get_queryset(self):
        queryset = StockMovement.objects.filter(store=self.request.user.store)
        params = self.request.query_params

        product = params.get('product', '')
        if product.isdigit():
            queryset = queryset.filter(product_id=int(product))

        action = params.get('action')
        if action in StockMovement.Action.values:
            queryset = queryset.filter(action=action)

        start_date = parse_date(params.get('start_date', '') or '')
        if start_date:
            queryset = queryset.filter(created_at__date__gte=start_date)
        end_date = parse_date(params.get('end_date', '') or '')
        if end_date:
            queryset = queryset.filter(created_at__date__lte=end_date)

        search = params.get('search', '').strip()
        if search:
            queryset = queryset.filter(
                Q(product_name__icontains=search) |
                Q(reason__icontains=search) |
                Q(reference__icontains=search)
            )
        return queryset.order_by('-created_at', '-id')


# =============================================================================
# Reservations
# =============================================================================

class BaseReservationView(RateLimitMixin, APIView):
    """
    POST: Reserve, release or set the units held by the caller's cart.

    Request Body:
    {
        "productId": 1,
        "quantity": 2,
        "action": "reserve"      // reserve | release | set
    }
    """
    rate_limit_max_requests = 60
    rate_limit_window_seconds = 60

    def post(self, request):
        from orders.carts import CartService

        serializer = ReservationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        product_id = serializer.validated_data['productId']
        quantity = serializer.validated_data['quantity']
        action = serializer.validated_data['action']

        store = request.user.store
        ledger = StockLedger()
        carts = CartService(ledger=ledger)
        cart = carts.get_cart(store, request.user.cart_owner, create=True)

        if action == 'reserve':
            _, snapshot = carts.reserve_item(cart, product_id, quantity)
        elif action == 'release':
            snapshot, _ = carts.release_item(cart, product_id, quantity)
            if snapshot is None:
                snapshot = ledger.snapshot(product_id, store_id=store.pk)
        else:
            carts.set_item_quantity(cart, product_id, quantity)
            snapshot = ledger.snapshot(product_id, store_id=store.pk)

        held = carts.held_quantities(cart).get(product_id, 0)
        carts.prune(cart)
        return Response({
            'success': True,
            'action': action,
            'held': held,
            **snapshot.as_payload()
        })


class ProductReserveView(BaseReservationView):
    """Public shop cart reservations."""
    permission_classes = [IsCustomerAuthenticated]


class AdminReserveView(BaseReservationView):
    """POS terminal cart reservations."""
    permission_classes = [IsStoreAuthenticated]
    rate_limit_max_requests = 120


# =============================================================================
# Live stock
# =============================================================================

class InventoryUpdatesView(APIView):
    """
    GET: Current stock levels for polling clients.

    Query Parameters:
        - productIds: Comma separated ids (default: every active product)
    """
    permission_classes = [IsStoreOrCustomer]

    def get(self, request):
        store = request.user.store
        product_ids = parse_product_ids(request.query_params.get('productIds'))
        if not product_ids:
            product_ids = Product.objects.filter(store=store, is_active=True).values_list('pk', flat=True)
        snapshots = StockLedger().snapshots(product_ids, store_id=store.pk)
        return Response({
            'products': [snapshot.as_payload() for snapshot in snapshots],
            'timestamp': timezone.now().isoformat(),
        })


def _sse(event) -> str:
    return f"data: {json.dumps(event, cls=DjangoJSONEncoder)}\n\n"


def inventory_event_stream(subscription, initial, product_ids, heartbeat):
    """
    Yield Server-Sent Events: the initial snapshots, then matching broadcasts.

    A comment line is sent whenever ``heartbeat`` seconds pass without an
    event so proxies keep the connection open.
    """
    watched = set(product_ids)
    try:
        yield _sse({'type': 'connected', 'timestamp': timezone.now().isoformat()})
        for snapshot in initial:
            yield _sse(make_event(INVENTORY_CHANGED, **snapshot.as_payload()))
        while True:
            event = subscription.get(timeout=heartbeat)
            if event is None:
                yield ": heartbeat\n\n"
                continue
            if event.get('type') not in (INVENTORY_CHANGED, PRODUCT_DELETED):
                continue
            if watched and event.get('productId') not in watched:
                continue
            yield _sse(event)
    finally:
        subscription.close()


class EventStreamRenderer(BaseRenderer):
    """Lets EventSource clients (Accept: text/event-stream) pass content negotiation."""
    media_type = 'text/event-stream'
    format = 'event-stream'
    charset = 'utf-8'

    def render(self, data, accepted_media_type=None, renderer_context=None):
        # Only error responses reach the renderer; the stream itself is raw.
        return _sse(data).encode(self.charset)


class InventoryStreamView(APIView):
    """
    GET: Server-Sent Events stream of stock changes for the caller's store.

    Query Parameters:
        - products: Comma separated ids to watch (default: all)
    """
    permission_classes = [IsStoreOrCustomer]
    renderer_classes = [JSONRenderer, EventStreamRenderer]

    def get(self, request):
        store = request.user.store
        product_ids = parse_product_ids(request.query_params.get('products'))
        initial_ids = product_ids or Product.objects.filter(store=store, is_active=True).values_list('pk', flat=True)
        initial = StockLedger().snapshots(initial_ids, store_id=store.pk)

        subscription = get_broadcaster().subscribe(store_channel(store.pk))
        heartbeat = getattr(settings, 'INVENTORY_STREAM_HEARTBEAT_SECONDS', 30)
        response = StreamingHttpResponse(
            inventory_event_stream(subscription, initial, product_ids, heartbeat),
            content_type='text/event-stream',
            status=status.HTTP_200_OK
        )
        response['Cache-Control'] = 'no-cache'
        response['X-Accel-Buffering'] = 'no'
        logger.debug(f"Inventory stream opened for store {store.pk}, products {product_ids or 'all'}")
        return response
