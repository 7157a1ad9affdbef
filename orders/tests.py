"""
Tests for the sale lifecycle, carts and order endpoints.

Test Cases:
1. Orders commit stock for every line, or nothing on a shortfall
2. Cart holds are converted into the sale (and handed back on failure)
3. Payments recompute status; overdue is derived
4. Item edits restore old lines and commit new ones atomically
5. Cancellation restores stock exactly once; reactivation commits again
6. Deletion guard: paid, completed or old orders are never restored
   (without transactions, a stale copy of a sale cannot move stock twice)
7. Public orders wait for approval; rejection restores stock
8. REST: sales, public orders, approval, carts, unload beacon
"""
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from core.authentication import issue_customer_token, issue_store_token
from core.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
)
from core.realtime import INVENTORY_CHANGED, ORDER_CREATED, ORDER_UPDATED, InMemoryBroadcaster, reset_broadcaster
from inventory.ledger import StockLedger
from inventory.models import Product, StockMovement, Store
from orders.carts import CartService
from orders.models import Cart, CartItem, Customer, Payment, Sale, SaleItem, SaleModification
from orders.services import OrderLifecycle, apply_payment_state
from orders.tasks import release_expired_carts, send_order_confirmation


class OrderFixturesMixin:
    """Store with A (5 @ 10.00), B (out of stock @ 25.00), C (20 @ 15.50, on sale 12.00)."""

    use_transactions = None

    def setUp(self):
        self.store = Store.objects.create(name='Test Store', slug='test-store', location='123 Test Street')
        self.product_a = self._product('Product A', 5, '10.00')
        self.product_b = self._product('Product B', 0, '25.00')
        self.product_c = self._product('Product C', 20, '15.50', discount_price=Decimal('12.00'))
        self.broadcaster = InMemoryBroadcaster()
        self.ledger = StockLedger(broadcaster=self.broadcaster, use_transactions=self.use_transactions)
        self.carts = CartService(ledger=self.ledger)
        self.lifecycle = OrderLifecycle(ledger=self.ledger, carts=self.carts)

    def _product(self, name, stock, price, **extra):
        return Product.objects.create(
            store=self.store, name=name, price=Decimal(price),
            quantity=stock, available_quantity=stock, **extra
        )

    def assertStock(self, product, quantity, reserved, available):
        product.refresh_from_db()
        self.assertEqual(
            (product.quantity, product.reserved_quantity, product.available_quantity),
            (quantity, reserved, available)
        )

    def order(self, *lines, **kwargs):
        items = [{'product_id': product.pk, 'quantity': qty} for product, qty in lines]
        return self.lifecycle.create_order(self.store, items, **kwargs)


class CreateOrderTestCase(OrderFixturesMixin, TestCase):

    def test_order_commits_stock_and_snapshots_prices(self):
        sale = self.order((self.product_a, 2), (self.product_c, 3), cashier='Maria')

        self.assertEqual(sale.status, Sale.Status.ACTIVE)
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PENDING)
        self.assertEqual(sale.approval_status, Sale.ApprovalStatus.APPROVED)
        self.assertEqual(sale.approved_by, 'Maria')
        # (2 * 10.00) + (3 * 12.00) = 56.00
        self.assertEqual(sale.subtotal, Decimal('56.00'))
        self.assertEqual(sale.final_amount, Decimal('56.00'))
        self.assertEqual(sale.amount_due, Decimal('56.00'))
        line_c = sale.items.get(product=self.product_c)
        self.assertEqual(line_c.unit_price, Decimal('12.00'))
        self.assertEqual(line_c.total_price, Decimal('36.00'))
        self.assertEqual(line_c.product_name, 'Product C')

        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_c, 17, 0, 17)
        self.assertEqual(sale.modifications.get().action, 'create')

    def test_full_payment_completes_order(self):
        sale = self.order((self.product_a, 1), tax='2.00', amount_paid='12.00', payment_method='card')

        self.assertEqual(sale.status, Sale.Status.COMPLETED)
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PAID)
        self.assertEqual(sale.amount_due, Decimal('0.00'))
        payment = Payment.objects.get(sale=sale)
        self.assertEqual(payment.amount, Decimal('12.00'))
        self.assertEqual(payment.method, 'card')

    def test_partial_initial_payment(self):
        sale = self.order((self.product_a, 3), amount_paid='10.00')

        self.assertEqual(sale.status, Sale.Status.ACTIVE)
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PARTIAL)
        self.assertEqual(sale.amount_due, Decimal('20.00'))

    def test_shortfall_on_any_line_changes_nothing(self):
        """
        Given: A has 5 units, B has 0
        When: Ordering 2 x A and 1 x B
        Then: InsufficientStockError naming B, A untouched, no sale recorded
        """
        with self.assertRaises(InsufficientStockError) as context:
            self.order((self.product_a, 2), (self.product_b, 1))

        self.assertIn('Product B', str(context.exception))
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_b, 0, 0, 0)
        self.assertEqual(Sale.objects.count(), 0)

    def test_failure_after_sale_row_leaves_nothing(self):
        with mock.patch.object(OrderLifecycle, '_record', side_effect=DatabaseError('disk full')):
            with self.assertRaises(DatabaseError):
                self.order((self.product_a, 2), (self.product_c, 1), amount_paid='5.00')

        self.assertEqual(Sale.objects.count(), 0)
        self.assertEqual(SaleItem.objects.count(), 0)
        self.assertEqual(Payment.objects.count(), 0)
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 20, 0, 20)

    def test_movements_reference_the_sale(self):
        sale = self.order((self.product_a, 2), (self.product_c, 3))

        movements = StockMovement.objects.filter(reference=f'sale #{sale.pk}')
        self.assertEqual(
            sorted(movements.values_list('product_id', 'action', 'quantity_change')),
            sorted([(self.product_a.pk, 'sale', -2), (self.product_c.pk, 'sale', -3)])
        )

    def test_order_with_exact_stock(self):
        self.order((self.product_a, 5))
        self.assertStock(self.product_a, 0, 0, 0)

    def test_cart_holds_become_the_sale(self):
        cart = self.carts.get_cart(self.store, 'cashier:Maria', create=True)
        self.carts.reserve_item(cart, self.product_a.pk, 3)
        self.assertStock(self.product_a, 5, 3, 2)

        self.order((self.product_a, 3), cart=cart)

        self.assertStock(self.product_a, 2, 0, 2)
        self.assertFalse(Cart.objects.filter(pk=cart.pk).exists())

    def test_order_larger_than_cart_hold(self):
        cart = self.carts.get_cart(self.store, 'cashier:Maria', create=True)
        self.carts.reserve_item(cart, self.product_a.pk, 2)

        self.order((self.product_a, 4), cart=cart)

        self.assertStock(self.product_a, 1, 0, 1)

    def test_other_carts_holds_are_not_sellable(self):
        other = self.carts.get_cart(self.store, 'customer:1', create=True)
        self.carts.reserve_item(other, self.product_a.pk, 4)

        with self.assertRaises(InsufficientStockError):
            self.order((self.product_a, 2))

        self.assertStock(self.product_a, 5, 4, 1)

    def test_failed_order_keeps_cart_holds(self):
        cart = self.carts.get_cart(self.store, 'cashier:Maria', create=True)
        self.carts.reserve_item(cart, self.product_a.pk, 2)

        with self.assertRaises(InsufficientStockError):
            self.order((self.product_a, 2), (self.product_b, 1), cart=cart)

        self.assertEqual(self.carts.held_quantities(cart), {self.product_a.pk: 2})
        self.assertStock(self.product_a, 5, 2, 3)

    def test_validation_error_empty_items(self):
        with self.assertRaises(OrderValidationError) as context:
            self.lifecycle.create_order(self.store, [])
        self.assertIn('at least one item', str(context.exception))

    def test_validation_error_invalid_quantity(self):
        for quantity in (0, -1, 2.5, '3'):
            with self.assertRaises(OrderValidationError):
                self.lifecycle.create_order(self.store, [{'product_id': self.product_a.pk, 'quantity': quantity}])

    def test_validation_error_duplicate_products(self):
        with self.assertRaises(OrderValidationError) as context:
            self.order((self.product_a, 1), (self.product_a, 2))
        self.assertIn('duplicate', str(context.exception).lower())

    def test_unknown_or_inactive_product(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.create_order(self.store, [{'product_id': 99999, 'quantity': 1}])

        self.product_c.is_active = False
        self.product_c.save()
        with self.assertRaises(NotFoundError):
            self.order((self.product_c, 1))
        self.assertStock(self.product_c, 20, 0, 20)

    def test_product_from_other_store_is_not_found(self):
        other_store = Store.objects.create(name='Other', slug='other')
        foreign = Product.objects.create(store=other_store, name='Foreign', price=1, quantity=5, available_quantity=5)

        with self.assertRaises(NotFoundError):
            self.order((foreign, 1))

    def test_discount_cannot_exceed_total(self):
        with self.assertRaises(OrderValidationError):
            self.order((self.product_a, 1), discount='11.00')
        self.assertStock(self.product_a, 5, 0, 5)

    def test_amount_paid_cannot_exceed_total(self):
        with self.assertRaises(OrderValidationError):
            self.order((self.product_a, 1), amount_paid='10.01')

    def test_public_order_awaits_approval(self):
        customer = Customer.objects.create(store=self.store, name='Ana', phone='0917')

        with mock.patch('orders.tasks.send_order_confirmation.delay'):
            with self.captureOnCommitCallbacks(execute=True):
                sale = self.order((self.product_a, 1), source=Sale.Source.PUBLIC, customer=customer)

        self.assertEqual(sale.approval_status, Sale.ApprovalStatus.PENDING)
        self.assertEqual(sale.approved_by, '')
        self.assertEqual(sale.customer_name, 'Ana')
        self.assertStock(self.product_a, 4, 0, 4)
        created = self.broadcaster.events(f'store-{self.store.pk}', ORDER_CREATED)
        self.assertEqual(created[0]['orderId'], sale.pk)

    def test_confirmation_queued_on_commit(self):
        with mock.patch('orders.tasks.send_order_confirmation.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                sale = self.order((self.product_a, 1))
                delay.assert_not_called()

        delay.assert_called_once_with(sale.pk)

    def test_broadcasts_stock_after_commit(self):
        with mock.patch('orders.tasks.send_order_confirmation.delay'):
            with self.captureOnCommitCallbacks(execute=True):
                self.order((self.product_a, 2), (self.product_c, 1))

        changed = self.broadcaster.events(event_type=INVENTORY_CHANGED)
        self.assertEqual(
            {event['productId']: event['availableQuantity'] for event in changed},
            {self.product_a.pk: 3, self.product_c.pk: 19}
        )


class CreateOrderFallbackTestCase(CreateOrderTestCase):
    """The same scenarios when the store cannot open a multi-row transaction."""
    use_transactions = False

    def test_batch_runs_without_transaction(self):
        with self.ledger.batch() as batch:
            self.assertFalse(batch.transactional)


class PaymentTestCase(OrderFixturesMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.sale = self.order((self.product_a, 3))  # 30.00

    def test_partial_then_full_payment(self):
        sale = self.lifecycle.add_payment(self.sale, '10.00', 'cash', cashier='Maria')
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PARTIAL)
        self.assertEqual(sale.amount_due, Decimal('20.00'))
        self.assertEqual(sale.status, Sale.Status.ACTIVE)

        sale = self.lifecycle.add_payment(sale, '20.00', 'cash')
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PAID)
        self.assertEqual(sale.status, Sale.Status.COMPLETED)
        self.assertEqual(sale.amount_paid, Decimal('30.00'))
        self.assertEqual(sale.amount_due, Decimal('0.00'))
        self.assertEqual(sale.payments.count(), 2)
        self.assertEqual(sale.modifications.filter(action='add_payment').count(), 2)

    def test_amount_paid_is_sum_of_payments(self):
        self.lifecycle.add_payment(self.sale, '5.00')
        sale = self.lifecycle.add_payment(self.sale, '7.50')

        self.assertEqual(sale.amount_paid, Decimal('12.50'))
        self.assertEqual(sale.amount_due, Decimal('17.50'))

    def test_mixed_methods(self):
        self.lifecycle.add_payment(self.sale, '10.00', 'cash')
        sale = self.lifecycle.add_payment(self.sale, '10.00', 'card')
        self.assertEqual(sale.payment_method, Sale.PaymentMethod.MIXED)

    def test_payment_cannot_exceed_amount_due(self):
        with self.assertRaises(OrderValidationError):
            self.lifecycle.add_payment(self.sale, '30.01')
        self.assertEqual(self.sale.payments.count(), 0)

    def test_payment_must_be_positive(self):
        with self.assertRaises(OrderValidationError):
            self.lifecycle.add_payment(self.sale, '0')

    def test_no_payment_on_cancelled_sale(self):
        self.lifecycle.cancel(self.sale)
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.add_payment(self.sale, '5.00')

    def test_paying_public_order_approves_it(self):
        sale = self.order((self.product_c, 1), source=Sale.Source.PUBLIC)

        sale = self.lifecycle.add_payment(sale, '12.00', cashier='Maria')

        self.assertEqual(sale.approval_status, Sale.ApprovalStatus.APPROVED)
        self.assertEqual(sale.approved_by, 'Maria')

    def test_recompute_rule(self):
        sale = Sale(final_amount=Decimal('50.00'), amount_paid=Decimal('0.00'), status=Sale.Status.COMPLETED)
        apply_payment_state(sale)
        self.assertEqual(
            (sale.payment_status, sale.status, sale.amount_due),
            (Sale.PaymentStatus.PENDING, Sale.Status.ACTIVE, Decimal('50.00'))
        )

        sale.amount_paid = Decimal('20.00')
        apply_payment_state(sale)
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PARTIAL)
        self.assertEqual(sale.amount_due, Decimal('30.00'))

        sale.amount_paid = Decimal('60.00')
        apply_payment_state(sale)
        self.assertEqual(
            (sale.payment_status, sale.status, sale.amount_due),
            (Sale.PaymentStatus.PAID, Sale.Status.COMPLETED, Decimal('0.00'))
        )

    def test_overdue_is_derived(self):
        self.sale.due_date = timezone.now() - timedelta(days=1)
        self.sale.save()

        self.assertTrue(self.sale.is_overdue)
        self.assertEqual(self.sale.display_payment_status, Sale.OVERDUE)
        self.assertEqual(self.sale.payment_status, Sale.PaymentStatus.PENDING)

        sale = self.lifecycle.add_payment(self.sale, '30.00')
        self.assertFalse(sale.is_overdue)
        self.assertEqual(sale.display_payment_status, Sale.PaymentStatus.PAID)


class UpdateOrderTestCase(OrderFixturesMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.sale = self.order((self.product_a, 2))  # A: 3 left

    def test_update_items_restores_then_commits(self):
        sale = self.lifecycle.update_items(
            self.sale,
            [{'product_id': self.product_a.pk, 'quantity': 4}, {'product_id': self.product_c.pk, 'quantity': 1}],
            tax='1.00'
        )

        self.assertStock(self.product_a, 1, 0, 1)
        self.assertStock(self.product_c, 19, 0, 19)
        self.assertEqual(sale.subtotal, Decimal('52.00'))
        self.assertEqual(sale.final_amount, Decimal('53.00'))
        self.assertEqual(sale.items.count(), 2)

    def test_update_items_can_reuse_own_committed_units(self):
        """The sale's own units are restored first, so all 5 can be taken."""
        self.lifecycle.update_items(self.sale, [{'product_id': self.product_a.pk, 'quantity': 5}])
        self.assertStock(self.product_a, 0, 0, 0)

    def test_update_items_shortfall_leaves_everything(self):
        with self.assertRaises(InsufficientStockError):
            self.lifecycle.update_items(
                self.sale,
                [{'product_id': self.product_a.pk, 'quantity': 2}, {'product_id': self.product_b.pk, 'quantity': 1}]
            )

        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_b, 0, 0, 0)
        self.sale.refresh_from_db()
        self.assertEqual(list(self.sale.items.values_list('product_id', 'quantity')), [(self.product_a.pk, 2)])
        self.assertEqual(self.sale.final_amount, Decimal('20.00'))

    def test_invalid_totals_are_refused_before_stock_moves(self):
        with self.assertRaises(OrderValidationError):
            self.lifecycle.update_items(self.sale, [{'product_id': self.product_a.pk, 'quantity': 1}], discount='15.00')
        with self.assertRaises(OrderValidationError):
            self.lifecycle.update_items(self.sale, [{'product_id': self.product_c.pk, 'quantity': 1}], tax='abc')

        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_c, 20, 0, 20)
        self.assertEqual(list(self.sale.items.values_list('product_id', 'quantity')), [(self.product_a.pk, 2)])

        # The sale still owns exactly its 2 units
        self.lifecycle.cancel(self.sale)
        self.assertStock(self.product_a, 5, 0, 5)

    def test_failure_after_rewrite_restores_lines_and_totals(self):
        with mock.patch.object(OrderLifecycle, '_record', side_effect=DatabaseError('disk full')):
            with self.assertRaises(DatabaseError):
                self.lifecycle.update_items(
                    self.sale,
                    [{'product_id': self.product_a.pk, 'quantity': 1}, {'product_id': self.product_c.pk, 'quantity': 2}],
                    discount='1.00', customer_name='Ana'
                )

        self.sale.refresh_from_db()
        self.assertEqual(list(self.sale.items.values_list('product_id', 'quantity')), [(self.product_a.pk, 2)])
        self.assertEqual(self.sale.items.get().unit_price, Decimal('10.00'))
        self.assertEqual(self.sale.final_amount, Decimal('20.00'))
        self.assertEqual(self.sale.discount, Decimal('0.00'))
        self.assertEqual(self.sale.customer_name, '')
        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_c, 20, 0, 20)

    def test_update_items_keeps_snapshot_price(self):
        sale = self.order((self.product_c, 1))
        Product.objects.filter(pk=self.product_c.pk).update(price=Decimal('14.00'), discount_price=None)

        sale = self.lifecycle.update_items(sale, [{'product_id': self.product_c.pk, 'quantity': 2}])

        self.assertEqual(sale.items.get().unit_price, Decimal('12.00'))
        self.assertEqual(sale.final_amount, Decimal('24.00'))

    def test_update_items_below_amount_paid_completes(self):
        sale = self.lifecycle.add_payment(self.sale, '15.00')

        sale = self.lifecycle.update_items(sale, [{'product_id': self.product_a.pk, 'quantity': 1}])

        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PAID)
        self.assertEqual(sale.status, Sale.Status.COMPLETED)
        self.assertEqual(sale.amount_due, Decimal('0.00'))

    def test_cannot_edit_items_of_completed_or_cancelled(self):
        paid = self.order((self.product_c, 1), amount_paid='12.00')
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.update_items(paid, [{'product_id': self.product_c.pk, 'quantity': 2}])

        self.lifecycle.cancel(self.sale)
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.update_items(self.sale, [{'product_id': self.product_a.pk, 'quantity': 1}])
        self.assertStock(self.product_c, 19, 0, 19)

    def test_update_details_recalculates_on_discount(self):
        sale = self.lifecycle.update_order_details(self.sale, discount='5.00', customer_name='Ana')

        self.assertEqual(sale.final_amount, Decimal('15.00'))
        self.assertEqual(sale.amount_due, Decimal('15.00'))
        self.assertEqual(sale.customer_name, 'Ana')

    def test_update_details_reopens_completed_order(self):
        sale = self.lifecycle.add_payment(self.sale, '20.00')
        self.assertEqual(sale.status, Sale.Status.COMPLETED)

        sale = self.lifecycle.update_order_details(sale, tax='3.00')

        self.assertEqual(sale.status, Sale.Status.ACTIVE)
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PARTIAL)
        self.assertEqual(sale.amount_due, Decimal('3.00'))

    def test_update_details_rejects_negative_total(self):
        with self.assertRaises(OrderValidationError):
            self.lifecycle.update_order_details(self.sale, discount='25.00')

    def test_update_details_on_cancelled(self):
        self.lifecycle.cancel(self.sale)
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.update_order_details(self.sale, notes='late')

    def test_update_general_allowed_when_cancelled(self):
        self.lifecycle.cancel(self.sale)

        sale = self.lifecycle.update_general(self.sale, customer_phone='0917', notes='called back')

        self.assertEqual(sale.customer_phone, '0917')
        self.assertEqual(sale.status, Sale.Status.CANCELLED)
        self.assertEqual(sale.modifications.last().action, 'update')


class UpdateOrderFallbackTestCase(UpdateOrderTestCase):
    use_transactions = False

    def test_stale_copy_cannot_rewrite_lines(self):
        stale = Sale.objects.get(pk=self.sale.pk)
        self.lifecycle.cancel(self.sale)

        with mock.patch.object(self.lifecycle, '_lock', return_value=stale):
            with self.assertRaises(InvalidTransitionError):
                self.lifecycle.update_items(self.sale, [{'product_id': self.product_a.pk, 'quantity': 1}])

        self.assertStock(self.product_a, 5, 0, 5)
        self.assertEqual(list(self.sale.items.values_list('product_id', 'quantity')), [(self.product_a.pk, 2)])


class CancelDeleteTestCase(OrderFixturesMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.sale = self.order((self.product_a, 2), (self.product_c, 4))

    def test_cancel_restores_stock_once(self):
        sale = self.lifecycle.cancel(self.sale, actor='Maria')

        self.assertEqual(sale.status, Sale.Status.CANCELLED)
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 20, 0, 20)

        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.cancel(sale)
        self.assertStock(self.product_a, 5, 0, 5)

    def test_cancel_broadcasts(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.lifecycle.cancel(self.sale)

        channel = f'store-{self.store.pk}'
        self.assertEqual(len(self.broadcaster.events(channel, INVENTORY_CHANGED)), 2)
        updated = self.broadcaster.events(channel, ORDER_UPDATED)
        self.assertEqual(updated[0]['action'], 'cancel')
        self.assertEqual(updated[0]['status'], Sale.Status.CANCELLED)

    def test_reactivate_commits_again(self):
        self.lifecycle.cancel(self.sale)

        sale = self.lifecycle.reactivate(self.sale)

        self.assertEqual(sale.status, Sale.Status.ACTIVE)
        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_c, 16, 0, 16)

    def test_reactivate_paid_sale_is_completed(self):
        sale = self.order((self.product_a, 1), amount_paid='10.00')
        self.lifecycle.cancel(sale)

        sale = self.lifecycle.reactivate(sale)

        self.assertEqual(sale.status, Sale.Status.COMPLETED)

    def test_reactivate_without_stock_fails(self):
        self.lifecycle.cancel(self.sale)
        self.ledger.adjust(self.product_c.pk, -18)

        with self.assertRaises(InsufficientStockError):
            self.lifecycle.reactivate(self.sale)

        self.sale.refresh_from_db()
        self.assertEqual(self.sale.status, Sale.Status.CANCELLED)
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 2, 0, 2)

    def test_reactivate_requires_cancelled(self):
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.reactivate(self.sale)

    def test_delete_restores_stock(self):
        self.lifecycle.delete(self.sale)

        self.assertFalse(Sale.objects.filter(pk=self.sale.pk).exists())
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 20, 0, 20)

    def test_delete_cancelled_sale_does_not_restore_twice(self):
        self.lifecycle.cancel(self.sale)

        self.lifecycle.delete(self.sale)

        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 20, 0, 20)

    def test_paid_sale_cannot_be_deleted(self):
        paid = self.order((self.product_a, 1), amount_paid='10.00')

        with mock.patch.object(self.ledger, 'restore') as restore:
            with self.assertRaises(InvalidTransitionError):
                self.lifecycle.delete(paid)
            restore.assert_not_called()

        self.assertTrue(Sale.objects.filter(pk=paid.pk).exists())
        self.assertStock(self.product_a, 2, 0, 2)

    def test_old_sale_cannot_be_deleted(self):
        Sale.objects.filter(pk=self.sale.pk).update(created_at=timezone.now() - timedelta(hours=25))

        with self.assertRaises(InvalidTransitionError) as context:
            self.lifecycle.delete(self.sale)

        self.assertIn('24 hours', str(context.exception))
        self.assertStock(self.product_a, 3, 0, 3)

    @override_settings(ORDER_DELETE_WINDOW_HOURS=48)
    def test_delete_window_is_configurable(self):
        Sale.objects.filter(pk=self.sale.pk).update(created_at=timezone.now() - timedelta(hours=25))
        self.lifecycle.delete(self.sale)
        self.assertFalse(Sale.objects.filter(pk=self.sale.pk).exists())


class CancelDeleteFallbackTestCase(CancelDeleteTestCase):
    use_transactions = False

    def test_stale_copy_cannot_cancel_twice(self):
        """
        Given: Two requests read the same active sale
        When: Both cancel it without a transaction to serialize them
        Then: The second is refused and stock is restored once
        """
        stale = Sale.objects.get(pk=self.sale.pk)
        self.lifecycle.cancel(self.sale)

        with mock.patch.object(self.lifecycle, '_lock', return_value=stale):
            with self.assertRaises(InvalidTransitionError):
                self.lifecycle.cancel(self.sale)

        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 20, 0, 20)
        self.assertEqual(SaleModification.objects.filter(sale=self.sale, action='cancel').count(), 1)

    def test_stale_copy_cannot_delete_a_cancelled_sale(self):
        stale = Sale.objects.get(pk=self.sale.pk)
        self.lifecycle.cancel(self.sale)

        with mock.patch.object(self.lifecycle, '_lock', return_value=stale):
            with self.assertRaises(InvalidTransitionError):
                self.lifecycle.delete(self.sale)

        self.assertEqual(Sale.objects.get(pk=self.sale.pk).status, Sale.Status.CANCELLED)
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 20, 0, 20)

    def test_stale_copy_cannot_reactivate_twice(self):
        self.lifecycle.cancel(self.sale)
        stale = Sale.objects.get(pk=self.sale.pk)
        self.lifecycle.reactivate(self.sale)

        with mock.patch.object(self.lifecycle, '_lock', return_value=stale):
            with self.assertRaises(InvalidTransitionError):
                self.lifecycle.reactivate(self.sale)

        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_c, 16, 0, 16)

    def test_failed_claim_leaves_sale_untouched(self):
        stale = Sale.objects.get(pk=self.sale.pk)
        self.lifecycle.update_general(self.sale, notes='called back')

        with mock.patch.object(self.lifecycle, '_lock', return_value=stale):
            with self.assertRaises(InvalidTransitionError):
                self.lifecycle.cancel(self.sale)

        self.sale.refresh_from_db()
        self.assertEqual(self.sale.status, Sale.Status.ACTIVE)
        self.assertStock(self.product_a, 3, 0, 3)

    def test_failed_cancel_reverts_status(self):
        restore = self.ledger.restore
        restored = []

        def restore_once(product_id, qty, **kwargs):
            if restored:
                raise DatabaseError('connection lost')
            restored.append(product_id)
            return restore(product_id, qty, **kwargs)

        with mock.patch.object(self.ledger, 'restore', side_effect=restore_once):
            with self.assertRaises(DatabaseError):
                self.lifecycle.cancel(self.sale)

        self.sale.refresh_from_db()
        self.assertEqual(self.sale.status, Sale.Status.ACTIVE)
        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_c, 16, 0, 16)

    def test_failed_delete_puts_the_sale_back(self):
        self.lifecycle.add_payment(self.sale, '5.00')
        sale = Sale.objects.get(pk=self.sale.pk)
        restore = self.ledger.restore
        restored = []

        def restore_once(product_id, qty, **kwargs):
            if restored:
                raise DatabaseError('connection lost')
            restored.append(product_id)
            return restore(product_id, qty, **kwargs)

        with mock.patch.object(self.ledger, 'restore', side_effect=restore_once):
            with self.assertRaises(DatabaseError):
                self.lifecycle.delete(self.sale)

        reinserted = Sale.objects.get(pk=self.sale.pk)
        self.assertEqual(reinserted.status, Sale.Status.ACTIVE)
        self.assertEqual(reinserted.created_at, sale.created_at)
        self.assertEqual(reinserted.items.count(), 2)
        self.assertEqual(reinserted.payments.get().amount, Decimal('5.00'))
        self.assertStock(self.product_a, 3, 0, 3)
        self.assertStock(self.product_c, 16, 0, 16)


class ApprovalTestCase(OrderFixturesMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.customer = Customer.objects.create(store=self.store, name='Ana')
        self.sale = self.order((self.product_a, 2), source=Sale.Source.PUBLIC, customer=self.customer)

    def test_approve_without_payment(self):
        sale = self.lifecycle.approve(self.sale, 'Maria', notes='Pickup at 5pm')

        self.assertEqual(sale.approval_status, Sale.ApprovalStatus.APPROVED)
        self.assertEqual(sale.approved_by, 'Maria')
        self.assertIsNotNone(sale.approved_at)
        self.assertEqual(sale.cashier, 'Maria')
        self.assertIn('Approval notes: Pickup at 5pm', sale.notes)
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PENDING)
        # Stock was committed when the order was placed
        self.assertStock(self.product_a, 3, 0, 3)

    def test_approve_with_full_payment(self):
        sale = self.lifecycle.approve(self.sale, 'Maria', amount_paid='20.00', payment_method='digital')

        self.assertEqual(sale.status, Sale.Status.COMPLETED)
        self.assertEqual(sale.payments.get().notes, 'Initial payment on approval')

    def test_approve_requires_cashier(self):
        with self.assertRaises(OrderValidationError):
            self.lifecycle.approve(self.sale, '')

    def test_approve_twice(self):
        self.lifecycle.approve(self.sale, 'Maria')
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.approve(self.sale, 'Jose')
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.reject(self.sale, 'Jose')

    def test_reject_restores_stock(self):
        sale = self.lifecycle.reject(self.sale, 'Maria', notes='Out of delivery area')

        self.assertEqual(sale.approval_status, Sale.ApprovalStatus.REJECTED)
        self.assertEqual(sale.status, Sale.Status.CANCELLED)
        self.assertIn('Rejection reason: Out of delivery area', sale.notes)
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertEqual(SaleModification.objects.filter(sale=sale, action='reject').count(), 1)

    def test_pos_sales_need_no_approval(self):
        sale = self.order((self.product_c, 1), cashier='Maria')
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.approve(sale, 'Maria')


class CartServiceTestCase(OrderFixturesMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.cart = self.carts.get_cart(self.store, 'customer:1', create=True)

    def test_reserve_accumulates_on_one_line(self):
        self.carts.reserve_item(self.cart, self.product_c.pk, 2)
        item, snapshot = self.carts.reserve_item(self.cart, self.product_c.pk, 3)

        self.assertEqual(item.quantity, 5)
        self.assertEqual(item.unit_price, Decimal('12.00'))
        self.assertEqual(snapshot.reserved_quantity, 5)
        self.assertEqual(CartItem.objects.filter(cart=self.cart).count(), 1)

    def test_reserve_unknown_product(self):
        with self.assertRaises(NotFoundError):
            self.carts.reserve_item(self.cart, 99999, 1)

    def test_failed_reserve_adds_no_line(self):
        with self.assertRaises(InsufficientStockError):
            self.carts.reserve_item(self.cart, self.product_b.pk, 1)
        self.assertEqual(self.carts.held_quantities(self.cart), {})

    def test_release_absent_line_is_noop(self):
        self.ledger.reserve(self.product_a.pk, 2)  # someone else's hold

        snapshot, released = self.carts.release_item(self.cart, self.product_a.pk, 2)

        self.assertIsNone(snapshot)
        self.assertEqual(released, 0)
        self.assertStock(self.product_a, 5, 2, 3)

    def test_duplicate_release_releases_once(self):
        self.carts.reserve_item(self.cart, self.product_a.pk, 2)

        self.carts.release_item(self.cart, self.product_a.pk, 2)
        self.carts.release_item(self.cart, self.product_a.pk, 2)

        self.assertStock(self.product_a, 5, 0, 5)

    def test_set_item_quantity(self):
        self.carts.set_item_quantity(self.cart, self.product_a.pk, 4)
        self.assertStock(self.product_a, 5, 4, 1)

        self.carts.set_item_quantity(self.cart, self.product_a.pk, 1)
        self.assertStock(self.product_a, 5, 1, 4)

        self.carts.set_item_quantity(self.cart, self.product_a.pk, 0)
        self.assertEqual(self.carts.held_quantities(self.cart), {})

    def test_release_cart(self):
        self.carts.reserve_item(self.cart, self.product_a.pk, 2)
        self.carts.reserve_item(self.cart, self.product_c.pk, 5)

        released = self.carts.release_cart(self.cart)

        self.assertEqual(released, 7)
        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_c, 20, 0, 20)
        self.assertFalse(Cart.objects.filter(pk=self.cart.pk).exists())

    def test_touch_extends_expiry(self):
        Cart.objects.filter(pk=self.cart.pk).update(expires_at=timezone.now() + timedelta(minutes=1))

        self.carts.reserve_item(self.cart, self.product_a.pk, 1)

        self.cart.refresh_from_db()
        self.assertGreater(self.cart.expires_at, timezone.now() + timedelta(hours=23))


class OrderTasksTestCase(OrderFixturesMixin, TestCase):

    def test_release_expired_carts(self):
        expired = self.carts.get_cart(self.store, 'customer:1', create=True)
        live = self.carts.get_cart(self.store, 'customer:2', create=True)
        self.carts.reserve_item(expired, self.product_a.pk, 2)
        self.carts.reserve_item(live, self.product_a.pk, 1)
        Cart.objects.filter(pk=expired.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

        result = release_expired_carts()

        self.assertEqual(result, {'carts': 1, 'units': 2})
        self.assertStock(self.product_a, 5, 1, 4)
        self.assertTrue(Cart.objects.filter(pk=live.pk).exists())

    def test_send_order_confirmation(self):
        sale = self.order((self.product_a, 1))

        result = send_order_confirmation.apply(args=(sale.pk,)).get()

        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['sale_id'], sale.pk)

    def test_send_order_confirmation_missing_sale(self):
        result = send_order_confirmation.apply(args=(99999,)).get()
        self.assertEqual(result['status'], 'error')


@override_settings(INVENTORY_BROADCASTER='core.realtime.InMemoryBroadcaster', RATE_LIMIT_ENABLED=False)
class SalesAPITestCase(APITestCase):
    """REST boundary for sales, public orders, approval and carts."""

    def setUp(self):
        reset_broadcaster()
        self.store = Store.objects.create(name='Test Store', slug='test-store')
        self.product_a = Product.objects.create(
            store=self.store, name='Product A', price=Decimal('10.00'), quantity=5, available_quantity=5
        )
        self.product_b = Product.objects.create(
            store=self.store, name='Product B', price=Decimal('25.00'), quantity=0, available_quantity=0
        )
        self.customer = Customer.objects.create(store=self.store, name='Ana', phone='0917')
        self.store_token = issue_store_token(self.store, cashier='Maria')
        self.customer_token = issue_customer_token(self.customer)
        self.as_store()

    def tearDown(self):
        reset_broadcaster()

    def as_store(self):
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {self.store_token}')

    def as_customer(self):
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {self.customer_token}')

    def create_sale(self, quantity=2, **extra):
        payload = {'items': [{'product_id': self.product_a.pk, 'quantity': quantity}]}
        payload.update(extra)
        return self.client.post('/api/sales/', payload, format='json')

    def test_create_sale(self):
        response = self.create_sale(2, amount_paid='5.00')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['cashier'], 'Maria')
        self.assertEqual(response.data['payment_status'], 'partial')
        self.assertEqual(response.data['amount_due'], '15.00')
        self.assertEqual(len(response.data['items']), 1)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.available_quantity, 3)

    def test_create_sale_consumes_cashier_cart(self):
        self.client.post('/api/products/admin-reserve/', {'productId': self.product_a.pk, 'quantity': 5}, format='json')

        response = self.create_sale(5)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.product_a.refresh_from_db()
        self.assertEqual((self.product_a.quantity, self.product_a.reserved_quantity), (0, 0))

    def test_create_sale_insufficient_stock(self):
        response = self.client.post('/api/sales/', {'items': [
            {'product_id': self.product_a.pk, 'quantity': 2},
            {'product_id': self.product_b.pk, 'quantity': 1},
        ]}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Insufficient Stock')
        self.assertIn('Available: 0, Requested: 1', response.data['detail'])
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.available_quantity, 5)

    def test_create_sale_rejects_bad_payload(self):
        response = self.client.post('/api/sales/', {'items': []}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_sales_require_store_token(self):
        self.as_customer()
        self.assertEqual(self.client.get('/api/sales/').status_code, status.HTTP_403_FORBIDDEN)
        self.client.credentials()
        self.assertEqual(self.client.get('/api/sales/').status_code, status.HTTP_401_UNAUTHORIZED)

    def test_list_filters_overdue(self):
        overdue_id = self.create_sale(1).data['id']
        self.create_sale(1)
        Sale.objects.filter(pk=overdue_id).update(due_date=timezone.now() - timedelta(days=2))

        response = self.client.get('/api/sales/?payment_status=overdue')

        self.assertEqual([row['id'] for row in response.data['results']], [overdue_id])
        self.assertEqual(response.data['results'][0]['display_payment_status'], 'overdue')

        pending = self.client.get('/api/sales/?payment_status=pending')
        self.assertNotIn(overdue_id, [row['id'] for row in pending.data['results']])

    def test_list_search_and_sort(self):
        self.create_sale(1, customer_name='Bea')
        self.create_sale(2, customer_name='Carlo')

        response = self.client.get('/api/sales/?search=carlo')
        self.assertEqual([row['customer_name'] for row in response.data['results']], ['Carlo'])

        response = self.client.get('/api/sales/?sort=final_amount')
        self.assertEqual([row['final_amount'] for row in response.data['results']], ['10.00', '20.00'])

    def test_put_actions(self):
        sale_id = self.create_sale(2).data['id']
        url = f'/api/sales/{sale_id}/'

        response = self.client.put(url, {'action': 'add_payment', 'amount': '20.00', 'payment_method': 'card'},
                                   format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'completed')
        self.assertEqual(response.data['payments'][0]['cashier'], 'Maria')

        response = self.client.put(url, {'action': 'update_items', 'items': [
            {'product_id': self.product_a.pk, 'quantity': 1}
        ]}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Invalid Transition')

        response = self.client.put(url, {'action': 'cancel'}, format='json')
        self.assertEqual(response.data['status'], 'cancelled')
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.available_quantity, 5)

    def test_put_requires_action_fields(self):
        sale_id = self.create_sale(1).data['id']
        response = self.client.put(f'/api/sales/{sale_id}/', {'action': 'add_payment'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_delete_guard(self):
        paid_id = self.create_sale(1, amount_paid='10.00').data['id']
        open_id = self.create_sale(1).data['id']

        response = self.client.delete(f'/api/sales/{paid_id}/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('paid', response.data['detail'])

        response = self.client.delete(f'/api/sales/{open_id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.available_quantity, 4)

    def test_other_store_sale_is_not_found(self):
        sale_id = self.create_sale(1).data['id']
        other = Store.objects.create(name='Other', slug='other')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {issue_store_token(other)}')

        self.assertEqual(self.client.get(f'/api/sales/{sale_id}/').status_code, status.HTTP_404_NOT_FOUND)

    def test_stats(self):
        self.create_sale(1, amount_paid='10.00')
        sale_id = self.create_sale(2).data['id']
        self.create_sale(1)
        self.client.put(f'/api/sales/{sale_id}/', {'action': 'cancel'}, format='json')

        response = self.client.get('/api/sales/stats/')

        self.assertEqual(response.data['total_orders'], 3)
        self.assertEqual(response.data['completed_orders'], 1)
        self.assertEqual(response.data['cancelled_orders'], 1)
        self.assertEqual(Decimal(response.data['total_revenue']), Decimal('20.00'))
        self.assertEqual(Decimal(response.data['total_outstanding']), Decimal('10.00'))

    def test_public_order_from_cart_then_approve(self):
        self.as_customer()
        self.client.post('/api/products/reserve/', {'productId': self.product_a.pk, 'quantity': 2}, format='json')

        response = self.client.post('/api/orders/public/', {'notes': 'Leave at door'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['approval_status'], 'pending')
        self.assertEqual(response.data['customer_name'], 'Ana')
        sale_id = response.data['id']
        self.product_a.refresh_from_db()
        self.assertEqual((self.product_a.quantity, self.product_a.reserved_quantity), (3, 0))

        listing = self.client.get('/api/orders/public/')
        self.assertEqual([row['id'] for row in listing.data], [sale_id])
        self.assertEqual(self.client.get(f'/api/orders/public/{sale_id}/').status_code, status.HTTP_200_OK)

        self.as_store()
        response = self.client.post('/api/orders/approve/', {'orderId': sale_id, 'action': 'approve'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['approved_by'], 'Maria')

    def test_public_order_with_empty_cart(self):
        self.as_customer()
        response = self.client.post('/api/orders/public/', {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('Cart is empty', response.data['detail'])

    def test_reject_public_order(self):
        self.as_customer()
        sale_id = self.client.post('/api/orders/public/', {'items': [
            {'product_id': self.product_a.pk, 'quantity': 3}
        ]}, format='json').data['id']

        self.as_store()
        response = self.client.post('/api/orders/approve/', {
            'orderId': sale_id, 'action': 'reject', 'notes': 'No stock for delivery'
        }, format='json')

        self.assertEqual(response.data['status'], 'cancelled')
        self.assertEqual(response.data['approval_status'], 'rejected')
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.available_quantity, 5)

    def test_cart_view_and_clear(self):
        self.client.post('/api/products/admin-reserve/', {'productId': self.product_a.pk, 'quantity': 2}, format='json')

        response = self.client.get('/api/cart/')
        self.assertEqual(response.data['owner_key'], 'cashier:Maria')
        self.assertEqual(response.data['items'][0]['quantity'], 2)
        self.assertEqual(response.data['total'], '20.00')

        response = self.client.delete('/api/cart/')
        self.assertEqual(response.data['released'], 2)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.reserved_quantity, 0)

    def test_unload_beacon_is_idempotent(self):
        self.as_customer()
        self.client.post('/api/products/reserve/', {'productId': self.product_a.pk, 'quantity': 3}, format='json')

        for _ in range(2):
            response = self.client.post('/api/cart/release/')
            self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

        self.product_a.refresh_from_db()
        self.assertEqual((self.product_a.reserved_quantity, self.product_a.available_quantity), (0, 5))

        self.client.credentials()
        self.assertEqual(self.client.post('/api/cart/release/').status_code, status.HTTP_204_NO_CONTENT)


class CheckoutScenarioTestCase(TestCase):
    """End-to-end totals with round numbers: A @ 10.00, B @ 20.00, P (10 units)."""

    def setUp(self):
        self.store = Store.objects.create(name='Test Store', slug='test-store')
        self.product_a = Product.objects.create(store=self.store, name='A', price=Decimal('10.00'),
                                                quantity=10, available_quantity=10)
        self.product_b = Product.objects.create(store=self.store, name='B', price=Decimal('20.00'),
                                                quantity=10, available_quantity=10)
        self.lifecycle = OrderLifecycle(ledger=StockLedger(broadcaster=InMemoryBroadcaster()))

    def test_tax_discount_and_full_payment(self):
        sale = self.lifecycle.create_order(self.store, [
            {'product_id': self.product_a.pk, 'quantity': 2},
            {'product_id': self.product_b.pk, 'quantity': 1},
        ])
        self.assertEqual(sale.subtotal, Decimal('40.00'))

        sale = self.lifecycle.update_order_details(sale, tax='4', discount='2')
        self.assertEqual(sale.final_amount, Decimal('42.00'))

        sale = self.lifecycle.add_payment(sale, '42')
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PAID)
        self.assertEqual(sale.status, Sale.Status.COMPLETED)

    def test_partial_then_remaining_payment(self):
        sale = self.lifecycle.create_order(self.store, [{'product_id': self.product_a.pk, 'quantity': 5}],
                                           tax='100.00')
        self.assertEqual(sale.final_amount, Decimal('150.00'))

        sale = self.lifecycle.add_payment(sale, '100')
        self.assertEqual((sale.payment_status, sale.amount_due), (Sale.PaymentStatus.PARTIAL, Decimal('50.00')))

        sale = self.lifecycle.add_payment(sale, '50')
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.PAID)
        self.assertEqual(sale.status, Sale.Status.COMPLETED)
        self.assertEqual(sale.amount_due, Decimal('0.00'))

    def test_cancel_five_unit_line(self):
        sale = self.lifecycle.create_order(self.store, [{'product_id': self.product_a.pk, 'quantity': 5}])
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.quantity, 5)

        self.lifecycle.cancel(sale)

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.quantity, 10)
        self.assertEqual(self.product_a.available_quantity, 10)
