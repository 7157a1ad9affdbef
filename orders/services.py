"""
Order Service Layer - the sale/order lifecycle.

Every transition that changes committed stock runs inside a ledger batch:

    create_order         commit each line (cart holds first)
    update_items         restore old lines, commit new lines
    cancel / reject      restore every line
    reactivate           commit every line again
    delete               restore every line (unless already cancelled)

When the batch runs without a transaction, stock-changing transitions first
claim the sale row with a conditional UPDATE (or DELETE) on the
``updated_at`` they read, and every sale row written inside the batch leaves
an inverse on the batch undo log.

Payment and detail edits never touch stock; they only recompute amounts:

    amount_paid >= final_amount   -> paid, completed
    0 < amount_paid < final       -> partial
    amount_paid == 0              -> pending

Overdue is derived at read time (``Sale.is_overdue``), never stored.
"""
import logging
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from core.exceptions import InvalidTransitionError, NotFoundError, OrderValidationError
from core.realtime import ORDER_CREATED, ORDER_UPDATED, get_broadcaster, make_event, safe_publish, store_channel
from inventory.ledger import StockLedger
from inventory.models import Product
from .carts import CartService
from .models import Payment, Sale, SaleItem, SaleModification

logger = logging.getLogger(__name__)

MONEY = Decimal('0.01')
ZERO = Decimal('0.00')
CONTACT_FIELDS = ('customer_name', 'customer_phone', 'customer_email', 'notes', 'due_date')
AMOUNT_FIELDS = ('status', 'payment_status', 'subtotal', 'tax', 'discount', 'final_amount', 'amount_due')
LINE_FIELDS = ('product_id', 'product_name', 'quantity', 'unit_price', 'total_price')
PAYMENT_METHODS = {
    Sale.PaymentMethod.CASH,
    Sale.PaymentMethod.CARD,
    Sale.PaymentMethod.DIGITAL,
}


def to_money(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(MONEY)
    except (InvalidOperation, TypeError, ValueError):
        raise OrderValidationError(f"{field} must be a number")
    if amount < 0:
        raise OrderValidationError(f"{field} cannot be negative")
    return amount


def validate_order_items(items) -> List[Tuple[int, int]]:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id' and 'quantity'

    Returns:
        ``(product_id, quantity)`` pairs sorted by product id

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    lines = {}
    for idx, item in enumerate(items):
        if 'product_id' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'product_id'")
        if 'quantity' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'quantity'")

        product_id = item['product_id']
        quantity = item['quantity']

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be a positive integer")

        if product_id in lines:
            raise OrderValidationError(f"Item {idx}: duplicate product_id {product_id}")
        lines[product_id] = quantity

    # Lock/update rows in product order to avoid deadlocks between batches
    return sorted(lines.items())


def apply_payment_state(sale: Sale) -> None:
    """Derive payment status, amount due and completion from the amounts."""
    if sale.amount_paid >= sale.final_amount:
        sale.payment_status = Sale.PaymentStatus.PAID
        sale.amount_due = ZERO
        sale.status = Sale.Status.COMPLETED
        return

    if sale.amount_paid > 0:
        sale.payment_status = Sale.PaymentStatus.PARTIAL
    else:
        sale.payment_status = Sale.PaymentStatus.PENDING
    sale.amount_due = sale.final_amount - sale.amount_paid
    if sale.status == Sale.Status.COMPLETED:
        sale.status = Sale.Status.ACTIVE


def _final_amount(subtotal: Decimal, tax: Decimal, discount: Decimal) -> Decimal:
    final = subtotal + tax - discount
    if final < 0:
        raise OrderValidationError("Discount cannot exceed subtotal plus tax")
    return final


class OrderLifecycle:
    """
    Drives sales through their states, calling the stock ledger on every
    transition that changes committed quantity.
    """

    def __init__(self, ledger: Optional[StockLedger] = None, broadcaster=None,
                 carts: Optional[CartService] = None):
        self.broadcaster = broadcaster or (ledger.broadcaster if ledger else get_broadcaster())
        self.ledger = ledger or StockLedger(broadcaster=self.broadcaster)
        self.carts = carts or CartService(ledger=self.ledger)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_order(self, store, items, *, cart=None, source=Sale.Source.POS, cashier='',
                     customer=None, tax=0, discount=0, amount_paid=0,
                     payment_method=Sale.PaymentMethod.CASH, due_date=None,
                     customer_name='', customer_phone='', customer_email='', notes='') -> Sale:
        """
        Create a sale and commit stock for every line.

        Units the ``cart`` holds for a product are converted from reservation
        to sale; the rest must be available. Any shortfall aborts the whole
        order with ``InsufficientStockError``.
        """
        lines = validate_order_items(items)
        tax = to_money(tax, 'Tax')
        discount = to_money(discount, 'Discount')
        amount_paid = to_money(amount_paid, 'Amount paid')
        if payment_method not in PAYMENT_METHODS:
            raise OrderValidationError(f"Unknown payment method: {payment_method}")

        product_ids = [product_id for product_id, _ in lines]
        products = {
            p.pk: p for p in Product.objects.filter(pk__in=product_ids, store=store, is_active=True)
        }
        missing = [product_id for product_id in product_ids if product_id not in products]
        if missing:
            raise NotFoundError(f"Products not found or inactive: {missing}")

        subtotal = sum((products[pid].effective_price * qty for pid, qty in lines), ZERO)
        final_amount = _final_amount(subtotal, tax, discount)
        if amount_paid > final_amount:
            raise OrderValidationError("Amount paid cannot exceed the order total")

        public = source == Sale.Source.PUBLIC
        with self.ledger.batch() as batch:
            held = self.carts.claim(cart, lines) if cart is not None else {}
            try:
                sale = Sale.objects.create(
                    store=store,
                    customer=customer,
                    source=source,
                    cashier=cashier or '',
                    status=Sale.Status.ACTIVE,
                    approval_status=Sale.ApprovalStatus.PENDING if public else Sale.ApprovalStatus.APPROVED,
                    approved_by='' if public else (cashier or ''),
                    approved_at=None if public else timezone.now(),
                    payment_method=payment_method,
                    subtotal=subtotal,
                    tax=tax,
                    discount=discount,
                    final_amount=final_amount,
                    amount_paid=amount_paid,
                    due_date=due_date,
                    customer_name=customer_name or (customer.name if customer else ''),
                    customer_phone=customer_phone or '',
                    customer_email=customer_email or '',
                    notes=notes or '',
                )
                batch.record_undo(f"delete sale #{sale.pk}", partial(_discard_sale, sale.pk))
                for product_id, qty in lines:
                    batch.commit(product_id, qty, held=held.get(product_id, 0), store_id=store.pk,
                                 reason='Order placed', reference=f"sale #{sale.pk}")

                SaleItem.objects.bulk_create([
                    SaleItem(
                        sale=sale,
                        product=products[pid],
                        product_name=products[pid].name,
                        quantity=qty,
                        unit_price=products[pid].effective_price,
                        total_price=products[pid].effective_price * qty,
                    )
                    for pid, qty in lines
                ])
                if amount_paid > 0:
                    Payment.objects.create(
                        sale=sale,
                        amount=amount_paid,
                        method=payment_method,
                        notes='Full payment' if amount_paid == final_amount else 'Partial payment',
                        cashier=cashier or '',
                    )
                apply_payment_state(sale)
                sale.save()
                self._record(sale, 'create', f"Created with {len(lines)} item(s), total {final_amount}", cashier)
            except Exception:
                if cart is not None and not batch.transactional:
                    self.carts.unclaim(cart, held)
                raise

        if cart is not None:
            self.carts.prune(cart)

        logger.info(
            f"Sale #{sale.id} created at store {store.pk}: {len(lines)} items, "
            f"total {final_amount}, {sale.payment_status}"
        )
        self._publish(sale, ORDER_CREATED, customerName=sale.customer_name,
                      finalAmount=str(sale.final_amount), source=sale.source)
        transaction.on_commit(partial(_queue_confirmation, sale.pk))
        return sale

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def add_payment(self, sale: Sale, amount, method=Sale.PaymentMethod.CASH, notes='', cashier='') -> Sale:
        amount = to_money(amount, 'Payment amount')
        if amount <= 0:
            raise OrderValidationError("Payment amount must be greater than 0")
        if method not in PAYMENT_METHODS:
            raise OrderValidationError(f"Unknown payment method: {method}")

        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            if sale.status == Sale.Status.CANCELLED:
                raise InvalidTransitionError("Cannot add payment to a cancelled sale")
            if amount > sale.amount_due:
                raise OrderValidationError(
                    f"Payment amount cannot exceed amount due ({sale.amount_due})"
                )
            self._take_payment(sale, amount, method, notes, cashier)
            sale.save()
            self._record(sale, 'add_payment', f"Payment of {amount} via {method}", cashier)

        self._publish(sale, ORDER_UPDATED, action='add_payment')
        return sale

    def _take_payment(self, sale: Sale, amount: Decimal, method: str, notes: str, cashier: str) -> None:
        Payment.objects.create(sale=sale, amount=amount, method=method, notes=notes or '', cashier=cashier or '')
        sale.amount_paid = sale.payments.aggregate(total=Sum('amount'))['total'] or ZERO
        if cashier:
            sale.cashier = cashier

        apply_payment_state(sale)
        if sale.payment_status == Sale.PaymentStatus.PAID and sale.approval_status == Sale.ApprovalStatus.PENDING:
            self._stamp_approval(sale, cashier or sale.cashier or 'Admin')

        methods = set(sale.payments.values_list('method', flat=True))
        sale.payment_method = methods.pop() if len(methods) == 1 else Sale.PaymentMethod.MIXED

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_items(self, sale: Sale, items, tax=None, discount=None, actor='', **details) -> Sale:
        """
        Replace the sale's lines.

        The new lines and totals are validated before any stock moves. Old
        lines are then restored and new lines committed inside one batch, so a
        shortfall on any product leaves stock and the sale as they were.
        Products already on the sale keep their snapshotted price.
        """
        lines = validate_order_items(items)
        if tax is not None:
            tax = to_money(tax, 'Tax')
        if discount is not None:
            discount = to_money(discount, 'Discount')

        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            if sale.status in (Sale.Status.COMPLETED, Sale.Status.CANCELLED):
                raise InvalidTransitionError(f"Cannot modify {sale.status} sales")

            old_items = list(sale.items.all())
            product_ids = [pid for pid, _ in lines]
            products = {
                p.pk: p for p in Product.objects.filter(pk__in=product_ids, store_id=sale.store_id)
            }
            missing = [pid for pid in product_ids if pid not in products]
            if missing:
                raise NotFoundError(f"Products not found: {missing}")

            snapshot_prices = {item.product_id: item.unit_price for item in old_items}
            new_items = []
            for pid, qty in lines:
                unit_price = snapshot_prices.get(pid, products[pid].effective_price)
                new_items.append(SaleItem(
                    sale=sale,
                    product=products[pid],
                    product_name=products[pid].name,
                    quantity=qty,
                    unit_price=unit_price,
                    total_price=unit_price * qty,
                ))
            subtotal = sum((item.total_price for item in new_items), ZERO)
            tax = sale.tax if tax is None else tax
            discount = sale.discount if discount is None else discount
            final_amount = _final_amount(subtotal, tax, discount)

            self._claim(sale, batch)
            reference = f"sale #{sale.pk}"
            for item in old_items:
                batch.restore(item.product_id, item.quantity, store_id=sale.store_id,
                              reason='Items updated', reference=reference)
            for product_id, qty in lines:
                batch.commit(product_id, qty, store_id=sale.store_id,
                             reason='Items updated', reference=reference)

            batch.record_undo(
                f"restore lines of sale #{sale.pk}",
                partial(_revert_sale, sale.pk, _row_values(sale), [_line_values(item) for item in old_items])
            )
            sale.items.all().delete()
            SaleItem.objects.bulk_create(new_items)

            sale.subtotal = subtotal
            sale.tax = tax
            sale.discount = discount
            sale.final_amount = final_amount
            self._apply_contact(sale, details)
            apply_payment_state(sale)
            sale.save()
            self._record(
                sale, 'update_items',
                f"Updated items: {len(lines)} products, Tax: {sale.tax}, Discount: {sale.discount}",
                actor
            )

        self._publish(sale, ORDER_UPDATED, action='update_items')
        return sale

    def update_order_details(self, sale: Sale, actor='', tax=None, discount=None, **details) -> Sale:
        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            if sale.status == Sale.Status.CANCELLED:
                raise InvalidTransitionError("Cannot modify cancelled orders")

            changes = self._apply_contact(sale, details)
            recalculate = False
            if tax is not None:
                tax = to_money(tax, 'Tax')
                changes.append(f"tax: {tax}")
                if tax != sale.tax:
                    sale.tax = tax
                    recalculate = True
            if discount is not None:
                discount = to_money(discount, 'Discount')
                changes.append(f"discount: {discount}")
                if discount != sale.discount:
                    sale.discount = discount
                    recalculate = True

            if recalculate:
                sale.final_amount = _final_amount(sale.subtotal, sale.tax, sale.discount)
                apply_payment_state(sale)
                logger.info(f"Sale #{sale.pk} total recalculated: {sale.final_amount}")

            sale.save()
            self._record(sale, 'update_details', f"Updated: {', '.join(changes) or 'nothing'}", actor)

        self._publish(sale, ORDER_UPDATED, action='update_order_details')
        return sale

    def update_general(self, sale: Sale, actor='', **details) -> Sale:
        """Customer contact fields, notes and due date; allowed in any state."""
        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            changes = self._apply_contact(sale, details)
            sale.save()
            self._record(sale, 'update', f"Updated: {', '.join(changes) or 'nothing'}", actor)
        return sale

    # ------------------------------------------------------------------
    # Cancellation and reactivation
    # ------------------------------------------------------------------

    def cancel(self, sale: Sale, actor='') -> Sale:
        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            if sale.status == Sale.Status.CANCELLED:
                raise InvalidTransitionError("Sale is already cancelled")
            self._claim(sale, batch, status=Sale.Status.CANCELLED)
            self._restore_lines(sale, batch, 'Sale cancelled')
            sale.status = Sale.Status.CANCELLED
            sale.save()
            self._record(sale, 'cancel', "Sale cancelled, stock restored", actor)

        logger.info(f"Sale #{sale.pk} cancelled")
        self._publish(sale, ORDER_UPDATED, action='cancel')
        return sale

    def reactivate(self, sale: Sale, actor='') -> Sale:
        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            if sale.status != Sale.Status.CANCELLED:
                raise InvalidTransitionError("Only cancelled sales can be reactivated")

            changes = {
                'status': Sale.Status.COMPLETED if sale.payment_status == Sale.PaymentStatus.PAID
                else Sale.Status.ACTIVE
            }
            if sale.approval_status == Sale.ApprovalStatus.REJECTED:
                changes['approval_status'] = Sale.ApprovalStatus.PENDING
            self._claim(sale, batch, **changes)
            for item in sale.items.all():
                batch.commit(item.product_id, item.quantity, store_id=sale.store_id,
                             reason='Sale reactivated', reference=f"sale #{sale.pk}")

            for field, value in changes.items():
                setattr(sale, field, value)
            sale.save()
            self._record(sale, 'reactivate', f"Sale reactivated as {sale.status}", actor)

        logger.info(f"Sale #{sale.pk} reactivated ({sale.status})")
        self._publish(sale, ORDER_UPDATED, action='reactivate')
        return sale

    def delete(self, sale: Sale, actor='') -> None:
        """
        Remove an unpaid sale younger than ``ORDER_DELETE_WINDOW_HOURS``.

        Stock is restored unless the sale was already cancelled (which
        restored it then).
        """
        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            if sale.payment_status == Sale.PaymentStatus.PAID or sale.status == Sale.Status.COMPLETED:
                raise InvalidTransitionError("Cannot delete completed or paid orders")
            if not sale.within_delete_window:
                hours = getattr(settings, 'ORDER_DELETE_WINDOW_HOURS', 24)
                raise InvalidTransitionError(f"Orders can only be deleted within {hours} hours of creation")

            sale_id, store_id = sale.pk, sale.store_id
            items = list(sale.items.all())
            if batch.transactional:
                sale.delete()
            else:
                self._claim_delete(sale, batch, items)

            if sale.status != Sale.Status.CANCELLED:
                for item in items:
                    batch.restore(item.product_id, item.quantity, store_id=store_id,
                                  reason='Sale deleted', reference=f"sale #{sale_id}")

        logger.info(f"Sale #{sale_id} deleted by {actor or 'unknown'}")
        transaction.on_commit(partial(
            safe_publish, self.broadcaster, store_channel(store_id),
            make_event(ORDER_UPDATED, orderId=sale_id, action='delete')
        ))

    # ------------------------------------------------------------------
    # Public order approval
    # ------------------------------------------------------------------

    def approve(self, sale: Sale, cashier: str, amount_paid=None,
                payment_method=Sale.PaymentMethod.CASH, notes='') -> Sale:
        """Accept a public shop order. Stock was committed when it was placed."""
        if not cashier:
            raise OrderValidationError("Cashier name is required for approval")

        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            self._require_pending_approval(sale)
            self._stamp_approval(sale, cashier)
            sale.cashier = cashier
            if notes:
                sale.notes = f"{sale.notes}\n\nApproval notes: {notes}" if sale.notes else f"Approval notes: {notes}"

            if amount_paid is not None:
                amount_paid = to_money(amount_paid, 'Amount paid')
                if amount_paid > sale.amount_due:
                    raise OrderValidationError("Payment amount cannot exceed amount due")
                if payment_method not in PAYMENT_METHODS:
                    raise OrderValidationError(f"Unknown payment method: {payment_method}")
                if amount_paid > 0:
                    self._take_payment(sale, amount_paid, payment_method, 'Initial payment on approval', cashier)

            sale.save()
            self._record(sale, 'approve', f"Approved by {cashier}", cashier)

        self._publish(sale, ORDER_UPDATED, action='approve')
        return sale

    def reject(self, sale: Sale, cashier: str = '', notes='') -> Sale:
        with self.ledger.batch() as batch:
            sale = self._lock(sale, batch)
            self._require_pending_approval(sale)
            self._claim(sale, batch, status=Sale.Status.CANCELLED, approval_status=Sale.ApprovalStatus.REJECTED)
            if sale.status != Sale.Status.CANCELLED:
                self._restore_lines(sale, batch, 'Order rejected')
            sale.status = Sale.Status.CANCELLED
            sale.approval_status = Sale.ApprovalStatus.REJECTED
            sale.approved_by = cashier or 'Admin'
            sale.approved_at = timezone.now()
            if notes:
                sale.notes = f"{sale.notes}\n\nRejection reason: {notes}" if sale.notes else f"Rejection reason: {notes}"
            sale.save()
            self._record(sale, 'reject', f"Rejected by {sale.approved_by}", cashier)

        self._publish(sale, ORDER_UPDATED, action='reject')
        return sale

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock(self, sale: Sale, batch) -> Sale:
        queryset = Sale.objects.all()
        if batch.transactional:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=sale.pk)
        except Sale.DoesNotExist:
            raise NotFoundError(f"Sale not found: {sale.pk}")

    def _claim(self, sale: Sale, batch, **changes) -> None:
        """
        Take ownership of the sale for a stock-changing transition.

        Without a transaction there is no row lock, so the transition is
        written first with one UPDATE conditioned on the ``updated_at`` that
        was read. A caller holding a stale copy matches no row and is refused
        before it touches stock.
        """
        if batch.transactional:
            return
        previous = {field: getattr(sale, field) for field in changes}
        claimed_at = timezone.now()
        updated = Sale.objects.filter(pk=sale.pk, updated_at=sale.updated_at).update(updated_at=claimed_at, **changes)
        if not updated:
            raise InvalidTransitionError(f"Sale #{sale.pk} was changed by another request; reload and retry")
        sale.updated_at = claimed_at
        if previous:
            batch.record_undo(f"revert status of sale #{sale.pk}",
                              partial(Sale.objects.filter(pk=sale.pk).update, **previous))

    def _claim_delete(self, sale: Sale, batch, items: List[SaleItem]) -> None:
        """Delete the sale row only if nobody changed it since it was read."""
        related = [items, list(sale.payments.all()), list(sale.modifications.all())]
        deleted, _ = Sale.objects.filter(pk=sale.pk, updated_at=sale.updated_at).delete()
        if not deleted:
            raise InvalidTransitionError(f"Sale #{sale.pk} was changed by another request; reload and retry")
        batch.record_undo(f"reinsert sale #{sale.pk}", partial(_reinsert_sale, sale, related))

    def _restore_lines(self, sale: Sale, batch, reason: str = '') -> None:
        for item in sale.items.all():
            batch.restore(item.product_id, item.quantity, store_id=sale.store_id,
                          reason=reason, reference=f"sale #{sale.pk}")

    def _require_pending_approval(self, sale: Sale) -> None:
        if sale.approval_status != Sale.ApprovalStatus.PENDING:
            raise InvalidTransitionError(f"Order already processed ({sale.approval_status})")

    def _stamp_approval(self, sale: Sale, approver: str) -> None:
        sale.approval_status = Sale.ApprovalStatus.APPROVED
        sale.approved_by = approver
        sale.approved_at = timezone.now()

    def _apply_contact(self, sale: Sale, details: Dict) -> List[str]:
        changes = []
        for field in CONTACT_FIELDS:
            if field in details and details[field] is not None:
                value = details[field]
                if field == 'due_date' and value == '':
                    value = None
                setattr(sale, field, value)
                changes.append(field.replace('_', ' '))
        return changes

    def _record(self, sale: Sale, action: str, changes: str, actor='') -> None:
        SaleModification.objects.create(sale=sale, action=action, changes=changes, actor=actor or '')

    def _publish(self, sale: Sale, event_type: str, **payload) -> None:
        event = make_event(
            event_type,
            orderId=sale.pk,
            status=sale.status,
            paymentStatus=sale.payment_status,
            approvalStatus=sale.approval_status,
            **payload
        )
        transaction.on_commit(partial(safe_publish, self.broadcaster, store_channel(sale.store_id), event))


def _queue_confirmation(sale_id: int) -> None:
    try:
        from .tasks import send_order_confirmation
        send_order_confirmation.delay(sale_id)
        logger.info(f"Triggered confirmation task for sale #{sale_id}")
    except Exception as e:
        # Don't fail the order if task queuing fails
        logger.error(f"Failed to queue confirmation task: {e}")


# Inverses for sale rows written inside a compensating batch

def _discard_sale(sale_id: int) -> None:
    Sale.objects.filter(pk=sale_id).delete()


def _row_values(sale: Sale) -> Dict:
    return {field: getattr(sale, field) for field in AMOUNT_FIELDS + CONTACT_FIELDS}


def _line_values(item: SaleItem) -> Dict:
    return {field: getattr(item, field) for field in LINE_FIELDS}


def _revert_sale(sale_id: int, values: Dict, lines: List[Dict]) -> None:
    SaleItem.objects.filter(sale_id=sale_id).delete()
    SaleItem.objects.bulk_create([SaleItem(sale_id=sale_id, **line) for line in lines])
    Sale.objects.filter(pk=sale_id).update(**values)


def _reinsert_sale(sale: Sale, related: List[List]) -> None:
    created_at = sale.created_at
    sale.save(force_insert=True)
    # auto_now_add stamps a fresh time on insert
    Sale.objects.filter(pk=sale.pk).update(created_at=created_at)
    for rows in related:
        if rows:
            type(rows[0]).objects.bulk_create(rows)
