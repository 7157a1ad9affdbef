"""
URL routing for sale, public order and cart API endpoints.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('sales/', views.SaleListCreateView.as_view(), name='sale-list'),
    path('sales/stats/', views.SaleStatsView.as_view(), name='sale-stats'),
    path('sales/<int:pk>/', views.SaleDetailView.as_view(), name='sale-detail'),
    path('orders/public/', views.PublicOrderListCreateView.as_view(), name='public-order-list'),
    path('orders/public/<int:pk>/', views.PublicOrderDetailView.as_view(), name='public-order-detail'),
    path('orders/approve/', views.OrderApprovalView.as_view(), name='order-approve'),
    path('cart/', views.CartView.as_view(), name='cart'),
    path('cart/release/', views.CartReleaseView.as_view(), name='cart-release'),
]
