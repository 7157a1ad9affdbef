"""
URL routing for inventory API endpoints.
"""
from django.urls import path
from . import views

app_name = 'inventory'

urlpatterns = [
    # Stores
    path('stores/', views.StoreListCreateView.as_view(), name='store-list'),
    path('stores/<int:pk>/', views.StoreDetailView.as_view(), name='store-detail'),

    # Products
    path('products/', views.ProductListCreateView.as_view(), name='product-list'),
    path('products/public/', views.ProductPublicListView.as_view(), name='product-public'),
    path('products/reserve/', views.ProductReserveView.as_view(), name='product-reserve'),
    path('products/admin-reserve/', views.AdminReserveView.as_view(), name='product-admin-reserve'),
    path('products/<int:pk>/', views.ProductDetailView.as_view(), name='product-detail'),
    path('products/<int:pk>/adjust/', views.ProductAdjustView.as_view(), name='product-adjust'),

    # Stock audit trail
    path('inventory/movements/', views.StockMovementListView.as_view(), name='stock-movements'),

    # Live stock
    path('inventory/updates/', views.InventoryUpdatesView.as_view(), name='inventory-updates'),
    path('inventory/stream/', views.InventoryStreamView.as_view(), name='inventory-stream'),
]
