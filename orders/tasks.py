"""
Celery tasks for order processing.

Tasks:
    - send_order_confirmation: Async notification after a sale is placed
    - release_expired_carts: Periodic return of abandoned cart holds to stock
    - generate_daily_order_report: Daily sales statistics
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.db.models import Count, Q, Sum
from django.utils import timezone

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def send_order_confirmation(self, sale_id: int):
    """
    Async task triggered after a sale is created.

    In production, this would:
    - Send email confirmation to customer
    - Send SMS notification
    - Generate receipt

    Args:
        sale_id: ID of the created sale

    Returns:
        Dict with confirmation details
    """
    from orders.models import Sale

    try:
        sale = Sale.objects.select_related('store').prefetch_related('items').get(id=sale_id)
    except Sale.DoesNotExist:
        logger.error(f"Sale #{sale_id} not found for confirmation")
        return {'status': 'error', 'message': f'Sale {sale_id} not found'}

    if sale.status == Sale.Status.CANCELLED:
        logger.warning(f"Sale #{sale_id} is cancelled, skipping confirmation")
        return {'status': 'skipped', 'message': f'Sale {sale_id} is cancelled'}

    items_summary = [
        f"  - {item.quantity}x {item.product_name} @ {item.unit_price}"
        for item in sale.items.all()
    ]

    confirmation_message = f"""
    ===============================================
    ORDER CONFIRMATION - #{sale.id}
    ===============================================
    Store: {sale.store.name}
    Customer: {sale.customer_name or 'Walk-in'}
    Status: {sale.status} / {sale.payment_status}
    Approval: {sale.approval_status}
    Total: {sale.final_amount}
    Paid: {sale.amount_paid}
    Due: {sale.amount_due}

    Items:
    {chr(10).join(items_summary)}

    Created: {sale.created_at.strftime('%Y-%m-%d %H:%M:%S')}
    ===============================================
    """

    logger.info(confirmation_message)

    return {
        'status': 'success',
        'sale_id': sale.id,
        'message': f'Confirmation sent for sale {sale_id}'
    }


@shared_task
def release_expired_carts():
    """
    Return stock held by carts nobody touched within ``CART_TTL_HOURS``.

    Scheduled via Celery Beat.
    """
    from orders.carts import CartService
    from orders.models import Cart

    service = CartService()
    expired = Cart.objects.filter(expires_at__lte=timezone.now())
    carts = 0
    units = 0
    for cart in expired:
        try:
            units += service.release_cart(cart)
            carts += 1
        except Exception as e:
            logger.error(f"Failed to release expired cart {cart.owner_key}: {e}")

    if carts:
        logger.warning(f"Released {carts} expired cart(s), {units} unit(s) returned to stock")
    return {'carts': carts, 'units': units}


@shared_task
def generate_daily_order_report():
    """
    Generate daily sales statistics report.

    Scheduled via Celery Beat for daily execution.
    """
    from orders.models import Sale

    yesterday = timezone.now().date() - timedelta(days=1)

    sales = Sale.objects.filter(created_at__date=yesterday)
    live = ~Q(status=Sale.Status.CANCELLED)

    stats = sales.aggregate(
        total_orders=Count('id'),
        completed_orders=Count('id', filter=Q(status=Sale.Status.COMPLETED)),
        cancelled_orders=Count('id', filter=Q(status=Sale.Status.CANCELLED)),
        pending_approval=Count('id', filter=Q(approval_status=Sale.ApprovalStatus.PENDING)),
        total_revenue=Sum('final_amount', filter=live),
        total_collected=Sum('amount_paid', filter=live),
        total_outstanding=Sum('amount_due', filter=live),
    )

    report = f"""
    ===============================================
    DAILY SALES REPORT - {yesterday}
    ===============================================
    Total Orders: {stats['total_orders']}
    Completed: {stats['completed_orders']}
    Cancelled: {stats['cancelled_orders']}
    Awaiting approval: {stats['pending_approval']}
    Total Revenue: {stats['total_revenue'] or 0}
    Collected: {stats['total_collected'] or 0}
    Outstanding: {stats['total_outstanding'] or 0}
    ===============================================
    """

    logger.info(report)

    return stats
