"""
URL configuration for the POS stock reservation service.

    /admin/    Django admin (stores, products, sales, carts)
    /health/   Liveness plus database and stock batch mode
    /api/      Inventory, sales, public orders and carts
"""
from django.contrib import admin
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.urls import include, path

from core.exceptions import TransactionUnsupported
from core.realtime import NullBroadcaster
from inventory.ledger import StockLedger


def health_check(request):
    """Reports whether the database answers and how stock batches will run."""
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
    except DatabaseError as e:
        return JsonResponse({'status': 'unhealthy', 'database': str(e)}, status=503)

    try:
        StockLedger(broadcaster=NullBroadcaster()).probe_transactions()
        batch_mode = 'transactional'
    except TransactionUnsupported:
        batch_mode = 'compensating'

    return JsonResponse({
        'status': 'healthy',
        'service': 'pos-stock-api',
        'database': connection.vendor,
        'stockBatches': batch_mode,
    })


urlpatterns = [
    path('admin/', admin.site.urls),
    path('health/', health_check, name='health-check'),
    path('api/', include('inventory.urls')),
    path('api/', include('orders.urls')),
]
