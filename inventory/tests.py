"""
Tests for the stock ledger and inventory endpoints.

Test Cases:
1. Reserve / release / commit / restore / adjust keep available + reserved == quantity
2. Guarded updates fail without changing stock
3. Release is clamped to the current reservation
4. Stock batches roll back (transactional) or compensate (fallback)
5. Every mutation broadcasts the new quantities after commit
6. Every mutation leaves a stock movement row; the table rejects a broken quantity sum
7. Concurrent reservations never oversell (PostgreSQL only)
8. REST: product CRUD, adjust, reservations, live stock, audit trail
"""
import json
import threading
from decimal import Decimal
from unittest import mock, skipUnless

from django.db import IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from core.authentication import issue_customer_token, issue_store_token
from core.exceptions import (
    InsufficientStockError,
    NotFoundError,
    OrderValidationError,
    StockConsistencyError,
)
from core.realtime import INVENTORY_CHANGED, PRODUCT_DELETED, InMemoryBroadcaster, get_broadcaster, reset_broadcaster
from inventory.ledger import StockLedger
from inventory.models import Product, StockMovement, Store


def make_store(name='Test Store', slug=None):
    return Store.objects.create(name=name, slug=slug or name.lower().replace(' ', '-'), location='123 Test Street')


def make_product(store, name='Widget', stock=10, price='10.00', **extra):
    return Product.objects.create(
        store=store,
        name=name,
        price=Decimal(price),
        quantity=stock,
        available_quantity=stock,
        **extra
    )


class LedgerAssertionsMixin:
    def assertStock(self, product, quantity, reserved, available):
        product.refresh_from_db()
        self.assertEqual(
            (product.quantity, product.reserved_quantity, product.available_quantity),
            (quantity, reserved, available)
        )
        self.assertEqual(product.available_quantity + product.reserved_quantity, product.quantity)


class StockLedgerTestCase(LedgerAssertionsMixin, TestCase):
    """Single-product primitives."""

    def setUp(self):
        self.store = make_store()
        self.product = make_product(self.store, stock=10)
        self.broadcaster = InMemoryBroadcaster()
        self.ledger = StockLedger(broadcaster=self.broadcaster)

    def test_reserve_moves_units_from_available_to_reserved(self):
        snapshot = self.ledger.reserve(self.product.pk, 4, store_id=self.store.pk)

        self.assertEqual(snapshot.reserved_quantity, 4)
        self.assertEqual(snapshot.available_quantity, 6)
        self.assertStock(self.product, 10, 4, 6)

    def test_reserve_exactly_available(self):
        self.ledger.reserve(self.product.pk, 10)
        self.assertStock(self.product, 10, 10, 0)

    def test_reserve_insufficient_stock_changes_nothing(self):
        self.ledger.reserve(self.product.pk, 8)

        with self.assertRaises(InsufficientStockError) as context:
            self.ledger.reserve(self.product.pk, 5)

        self.assertIn('Available: 2', str(context.exception))
        self.assertIn('Requested: 5', str(context.exception))
        self.assertStock(self.product, 10, 8, 2)

    def test_reserve_rejects_non_positive_quantity(self):
        for qty in (0, -3, 1.5, True):
            with self.assertRaises(OrderValidationError):
                self.ledger.reserve(self.product.pk, qty)
        self.assertStock(self.product, 10, 0, 10)

    def test_product_outside_store_is_not_found(self):
        other_store = make_store('Other Store')

        with self.assertRaises(NotFoundError):
            self.ledger.reserve(self.product.pk, 1, store_id=other_store.pk)
        with self.assertRaises(NotFoundError):
            self.ledger.commit(99999, 1)

    def test_release_is_clamped_to_reservation(self):
        """
        Given: 3 reserved
        When: Releasing 5 (duplicate unload beacon)
        Then: Only 3 are released, reserved never goes negative
        """
        self.ledger.reserve(self.product.pk, 3)

        snapshot, released = self.ledger.release(self.product.pk, 5)

        self.assertEqual(released, 3)
        self.assertEqual(snapshot.reserved_quantity, 0)
        self.assertStock(self.product, 10, 0, 10)

        _, released_again = self.ledger.release(self.product.pk, 5)
        self.assertEqual(released_again, 0)
        self.assertStock(self.product, 10, 0, 10)

    def test_reserve_release_round_trip(self):
        self.ledger.reserve(self.product.pk, 6)
        self.ledger.release(self.product.pk, 6)
        self.assertStock(self.product, 10, 0, 10)

    def test_commit_from_available(self):
        self.ledger.commit(self.product.pk, 4)
        self.assertStock(self.product, 6, 0, 6)

    def test_commit_converts_held_units(self):
        """Held units leave the reservation, the rest leave available stock."""
        self.ledger.reserve(self.product.pk, 3)

        self.ledger.commit(self.product.pk, 5, held=3)

        self.assertStock(self.product, 5, 0, 5)

    def test_commit_cannot_use_other_carts_reservations(self):
        """
        Given: 10 units, 8 reserved by someone else
        When: Committing 5 without holds
        Then: Insufficient stock (only 2 available)
        """
        self.ledger.reserve(self.product.pk, 8)

        with self.assertRaises(InsufficientStockError) as context:
            self.ledger.commit(self.product.pk, 5)

        self.assertEqual(context.exception.available, 2)
        self.assertStock(self.product, 10, 8, 2)

    def test_commit_rejects_held_above_quantity(self):
        with self.assertRaises(OrderValidationError):
            self.ledger.commit(self.product.pk, 2, held=3)

    def test_restore_undoes_commit(self):
        self.ledger.commit(self.product.pk, 7)
        self.ledger.restore(self.product.pk, 7)
        self.assertStock(self.product, 10, 0, 10)

    def test_adjust_receives_and_removes_stock(self):
        self.ledger.adjust(self.product.pk, 15)
        self.assertStock(self.product, 25, 0, 25)

        self.ledger.adjust(self.product.pk, -5)
        self.assertStock(self.product, 20, 0, 20)

    def test_adjust_cannot_remove_reserved_units(self):
        self.ledger.reserve(self.product.pk, 8)

        with self.assertRaises(InsufficientStockError):
            self.ledger.adjust(self.product.pk, -3)

        self.assertStock(self.product, 10, 8, 2)

    def test_no_lost_update_with_stale_reads(self):
        """
        Two writers that both read available=10 must not both see their
        write land on top of the stale value.
        """
        stale_a = Product.objects.get(pk=self.product.pk)
        stale_b = Product.objects.get(pk=self.product.pk)
        self.assertEqual(stale_a.available_quantity, stale_b.available_quantity)

        StockLedger(broadcaster=self.broadcaster).reserve(stale_a.pk, 6)
        with self.assertRaises(InsufficientStockError):
            StockLedger(broadcaster=self.broadcaster).reserve(stale_b.pk, 6)
        StockLedger(broadcaster=self.broadcaster).reserve(stale_b.pk, 4)

        self.assertStock(self.product, 10, 10, 0)

    def test_mutations_write_movements(self):
        self.ledger.reserve(self.product.pk, 3, reason='Added to cart', reference='cart cashier:Maria')
        self.ledger.release(self.product.pk, 5)
        self.ledger.release(self.product.pk, 1)  # nothing held, nothing recorded
        self.ledger.commit(self.product.pk, 2, reference='sale #1')
        self.ledger.restore(self.product.pk, 2, reason='Sale cancelled', reference='sale #1')
        self.ledger.adjust(self.product.pk, 5, reason='Delivery')
        self.ledger.adjust(self.product.pk, -1, reason='Damaged')

        rows = list(StockMovement.objects.order_by('id').values_list(
            'action', 'quantity_change', 'available_change', 'available_after'
        ))
        self.assertEqual(rows, [
            (StockMovement.Action.RESERVATION, 0, -3, 7),
            (StockMovement.Action.RELEASE, 0, 3, 10),
            (StockMovement.Action.SALE, -2, -2, 8),
            (StockMovement.Action.RESTORE, 2, 2, 10),
            (StockMovement.Action.RESTOCK, 5, 5, 15),
            (StockMovement.Action.ADJUSTMENT, -1, -1, 14),
        ])
        first = StockMovement.objects.order_by('id').first()
        self.assertEqual(first.reference, 'cart cashier:Maria')
        self.assertEqual(first.reserved_after, 3)
        last = StockMovement.objects.order_by('id').last()
        self.assertEqual(last.reason, 'Damaged')
        self.assertEqual(last.product_name, 'Widget')
        self.assertEqual(last.store, self.store)
        self.assertEqual((last.quantity_before, last.quantity_after), (15, 14))

    def test_failed_guard_writes_no_movement(self):
        with self.assertRaises(InsufficientStockError):
            self.ledger.reserve(self.product.pk, 50)
        with self.assertRaises(InsufficientStockError):
            self.ledger.adjust(self.product.pk, -11)
        self.assertFalse(StockMovement.objects.exists())

    def test_quantity_sum_is_enforced_by_the_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Product.objects.filter(pk=self.product.pk).update(quantity=99)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                make_product(self.store, 'Broken', stock=5, reserved_quantity=2)

        self.assertStock(self.product, 10, 0, 10)

    def test_mutations_broadcast_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.reserve(self.product.pk, 2, store_id=self.store.pk)
            self.assertEqual(self.broadcaster.published, [])

        events = self.broadcaster.events(f"store-{self.store.pk}", INVENTORY_CHANGED)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]['productId'], self.product.pk)
        self.assertEqual(events[0]['totalQuantity'], 10)
        self.assertEqual(events[0]['availableQuantity'], 8)
        self.assertEqual(events[0]['reservedQuantity'], 2)
        self.assertIn('timestamp', events[0])

    def test_failed_guard_broadcasts_nothing(self):
        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(InsufficientStockError):
                self.ledger.reserve(self.product.pk, 50)
        self.assertEqual(self.broadcaster.published, [])

    def test_broadcast_failure_does_not_fail_mutation(self):
        broken = mock.Mock()
        broken.publish.side_effect = ConnectionError('redis down')
        ledger = StockLedger(broadcaster=broken)

        with self.captureOnCommitCallbacks(execute=True):
            ledger.reserve(self.product.pk, 1)

        broken.publish.assert_called_once()
        self.assertStock(self.product, 10, 1, 9)


class StockBatchTestCase(LedgerAssertionsMixin, TestCase):
    """Multi-product updates in both protocol modes."""

    def setUp(self):
        self.store = make_store()
        self.product_a = make_product(self.store, 'A', stock=5)
        self.product_b = make_product(self.store, 'B', stock=0)
        self.broadcaster = InMemoryBroadcaster()

    def _order_two_products(self, ledger):
        with ledger.batch() as batch:
            batch.commit(self.product_a.pk, 2)
            batch.commit(self.product_b.pk, 1)

    def test_transactional_batch_rolls_back(self):
        ledger = StockLedger(broadcaster=self.broadcaster)

        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(InsufficientStockError):
                self._order_two_products(ledger)

        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_b, 0, 0, 0)
        # The rolled back commit of A is never announced
        self.assertEqual(self.broadcaster.published, [])

    def test_fallback_batch_compensates(self):
        ledger = StockLedger(broadcaster=self.broadcaster, use_transactions=False)

        with self.assertRaises(InsufficientStockError):
            self._order_two_products(ledger)

        self.assertStock(self.product_a, 5, 0, 5)
        self.assertStock(self.product_b, 0, 0, 0)

    def test_compensation_is_recorded_in_trail(self):
        ledger = StockLedger(broadcaster=self.broadcaster, use_transactions=False)

        with self.assertRaises(InsufficientStockError):
            self._order_two_products(ledger)

        rows = list(StockMovement.objects.filter(product=self.product_a).order_by('id').values_list(
            'action', 'quantity_change', 'reason'
        ))
        self.assertEqual(rows, [
            (StockMovement.Action.SALE, -2, ''),
            (StockMovement.Action.RESTORE, 2, 'compensation'),
        ])

    def test_rolled_back_batch_leaves_no_movements(self):
        with self.assertRaises(InsufficientStockError):
            self._order_two_products(StockLedger(broadcaster=self.broadcaster))
        self.assertFalse(StockMovement.objects.exists())

    @override_settings(STOCK_LEDGER_USE_TRANSACTIONS=False)
    def test_fallback_enabled_by_setting(self):
        ledger = StockLedger(broadcaster=self.broadcaster)
        with ledger.batch() as batch:
            self.assertFalse(batch.transactional)

    def test_probe_reports_unsupported_backend(self):
        ledger = StockLedger(broadcaster=self.broadcaster)
        with mock.patch.object(connection.features, 'supports_transactions', False):
            with ledger.batch() as batch:
                self.assertFalse(batch.transactional)
        with ledger.batch() as batch:
            self.assertTrue(batch.transactional)

    def test_fallback_compensates_every_step_type(self):
        ledger = StockLedger(broadcaster=self.broadcaster, use_transactions=False)
        ledger.commit(self.product_a.pk, 1)
        ledger.reserve(self.product_a.pk, 1)

        with self.assertRaises(InsufficientStockError):
            with ledger.batch() as batch:
                batch.restore(self.product_a.pk, 1)
                batch.release(self.product_a.pk, 1)
                batch.reserve(self.product_a.pk, 2)
                batch.commit(self.product_a.pk, 1, held=1)
                batch.commit(self.product_b.pk, 1)

        self.assertStock(self.product_a, 4, 1, 3)

    def test_failed_compensation_surfaces_consistency_error(self):
        ledger = StockLedger(broadcaster=self.broadcaster, use_transactions=False)

        with mock.patch.object(ledger, '_unwind_commit', side_effect=RuntimeError('db gone')):
            with self.assertRaises(StockConsistencyError) as context:
                self._order_two_products(ledger)

        self.assertIsInstance(context.exception.original, InsufficientStockError)
        self.assertEqual(len(context.exception.pending), 1)
        self.assertEqual(context.exception.status_code, 409)
        # A stays committed; the error says so instead of hiding it
        self.assertStock(self.product_a, 3, 0, 3)


@skipUnless(connection.vendor == 'postgresql', 'row-level concurrency needs PostgreSQL')
class ConcurrentReservationTestCase(TransactionTestCase):
    """
    Test concurrent reservations against real row locking.
    Uses TransactionTestCase for proper multi-threading support.
    """

    def setUp(self):
        self.store = make_store('Concurrent Test Store')
        self.product = make_product(self.store, 'Limited Stock Product', stock=10)

    def test_concurrent_reservations_no_overselling(self):
        """
        Given: 10 units in stock
        When: Eight concurrent reservations of 3 units each
        Then: Exactly three succeed and available never goes negative
        """
        results = []
        lock = threading.Lock()

        def reserve():
            try:
                StockLedger(broadcaster=InMemoryBroadcaster()).reserve(self.product.pk, 3)
                outcome = 'ok'
            except InsufficientStockError:
                outcome = 'short'
            finally:
                connection.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=reserve) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.product.refresh_from_db()
        self.assertEqual(results.count('ok'), 3)
        self.assertEqual(self.product.reserved_quantity, 9)
        self.assertEqual(self.product.available_quantity, 1)
        self.assertEqual(self.product.quantity, 10)


@override_settings(
    INVENTORY_BROADCASTER='core.realtime.InMemoryBroadcaster',
    RATE_LIMIT_ENABLED=False,
    INVENTORY_STREAM_HEARTBEAT_SECONDS=1,
)
class InventoryAPITestCase(LedgerAssertionsMixin, APITestCase):
    """REST boundary for products, reservations and live stock."""

    def setUp(self):
        reset_broadcaster()
        self.store = make_store()
        self.other_store = make_store('Other Store')
        self.product = make_product(self.store, 'Soap', stock=10, price='20.00')
        self.foreign = make_product(self.other_store, 'Foreign', stock=10)
        self.token = issue_store_token(self.store, cashier='Maria')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {self.token}')

    def tearDown(self):
        reset_broadcaster()

    def test_requires_authentication(self):
        self.client.credentials()
        response = self.client.get('/api/products/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_list_is_store_scoped(self):
        response = self.client.get('/api/products/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        ids = [row['id'] for row in response.data['results']]
        self.assertEqual(ids, [self.product.pk])

    def test_create_product_with_initial_stock(self):
        response = self.client.post('/api/products/', {
            'name': 'Shampoo',
            'price': '55.00',
            'initial_quantity': 12,
            'quantity': 999,
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['quantity'], 12)
        self.assertEqual(response.data['available_quantity'], 12)
        product = Product.objects.get(pk=response.data['id'])
        self.assertEqual(product.store, self.store)
        self.assertStock(product, 12, 0, 12)
        self.assertEqual(product.movements.get().reason, 'Initial stock')

    def test_discount_must_be_below_price(self):
        response = self.client.post('/api/products/', {
            'name': 'Bad Deal', 'price': '10.00', 'discount_price': '12.00',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_quantities_are_read_only_on_update(self):
        response = self.client.patch(
            f'/api/products/{self.product.pk}/',
            {'name': 'Bath Soap', 'available_quantity': 500},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['name'], 'Bath Soap')
        self.assertStock(self.product, 10, 0, 10)

    def test_adjust_endpoint(self):
        response = self.client.post(
            f'/api/products/{self.product.pk}/adjust/', {'delta': -4, 'reason': 'Damaged'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['availableQuantity'], 6)
        self.assertStock(self.product, 6, 0, 6)

    def test_adjust_other_store_product_is_not_found(self):
        response = self.client.post(f'/api/products/{self.foreign.pk}/adjust/', {'delta': 5}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error'], 'Not Found')
        self.assertStock(self.foreign, 10, 0, 10)

    def test_adjust_below_available_is_rejected(self):
        response = self.client.post(f'/api/products/{self.product.pk}/adjust/', {'delta': -11}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('Available: 10', response.data['detail'])

    def test_adjust_reason_lands_in_audit_trail(self):
        self.client.post(f'/api/products/{self.product.pk}/adjust/', {'delta': -4, 'reason': 'Damaged'}, format='json')

        movement = StockMovement.objects.get(product=self.product)
        self.assertEqual(movement.action, StockMovement.Action.ADJUSTMENT)
        self.assertEqual(movement.reason, 'Damaged')
        self.assertEqual(movement.reference, 'cashier Maria')

    def test_stock_movements_are_store_scoped_and_filterable(self):
        self.client.post(f'/api/products/{self.product.pk}/adjust/', {'delta': -4, 'reason': 'Damaged'}, format='json')
        StockLedger().reserve(self.product.pk, 2, reason='Added to cart')
        StockLedger().adjust(self.foreign.pk, 3, reason='Delivery')

        response = self.client.get('/api/inventory/movements/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        newest, oldest = response.data['results']
        self.assertEqual(newest['action'], 'reservation')
        self.assertEqual(oldest['action'], 'adjustment')
        self.assertEqual((oldest['available_before'], oldest['available_after']), (10, 6))
        self.assertEqual(oldest['quantity_change'], -4)

        response = self.client.get('/api/inventory/movements/', {'action': 'adjustment'})
        self.assertEqual([row['reason'] for row in response.data['results']], ['Damaged'])

        response = self.client.get('/api/inventory/movements/', {'search': 'cart'})
        self.assertEqual([row['action'] for row in response.data['results']], ['reservation'])

        response = self.client.get('/api/inventory/movements/', {'product': self.foreign.pk})
        self.assertEqual(response.data['count'], 0)

    def test_stock_movements_require_store_token(self):
        self.client.credentials()
        response = self.client.get('/api/inventory/movements/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_delete_broadcasts_product_deleted(self):
        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.delete(f'/api/products/{self.product.pk}/')

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        events = get_broadcaster().events(event_type=PRODUCT_DELETED)
        self.assertEqual(events[0]['productId'], self.product.pk)

    def test_admin_reserve_and_release(self):
        response = self.client.post('/api/products/admin-reserve/', {
            'productId': self.product.pk, 'quantity': 3,
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['held'], 3)
        self.assertEqual(response.data['reservedQuantity'], 3)
        self.assertStock(self.product, 10, 3, 7)

        response = self.client.post('/api/products/admin-reserve/', {
            'productId': self.product.pk, 'quantity': 5, 'action': 'release',
        }, format='json')

        self.assertEqual(response.data['held'], 0)
        self.assertStock(self.product, 10, 0, 10)

    def test_admin_reserve_set_quantity(self):
        self.client.post('/api/products/admin-reserve/', {
            'productId': self.product.pk, 'quantity': 4, 'action': 'set',
        }, format='json')
        self.assertStock(self.product, 10, 4, 6)

        self.client.post('/api/products/admin-reserve/', {
            'productId': self.product.pk, 'quantity': 1, 'action': 'set',
        }, format='json')
        self.assertStock(self.product, 10, 1, 9)

    def test_reserve_insufficient_stock(self):
        response = self.client.post('/api/products/admin-reserve/', {
            'productId': self.product.pk, 'quantity': 11,
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Insufficient Stock')
        self.assertStock(self.product, 10, 0, 10)

    def test_customer_reserve_requires_customer_token(self):
        from orders.models import Customer

        response = self.client.post('/api/products/reserve/', {
            'productId': self.product.pk, 'quantity': 1,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        customer = Customer.objects.create(store=self.store, name='Ana')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {issue_customer_token(customer)}')
        response = self.client.post('/api/products/reserve/', {
            'productId': self.product.pk, 'quantity': 2,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertStock(self.product, 10, 2, 8)

    def test_public_products_for_customers(self):
        from orders.models import Customer

        customer = Customer.objects.create(store=self.store, name='Ana')
        self.client.credentials(HTTP_AUTHORIZATION=f'Bearer {issue_customer_token(customer)}')
        response = self.client.get('/api/products/public/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['results'][0]['available_quantity'], 10)
        self.assertNotIn('cost', response.data['results'][0])

    def test_inventory_updates(self):
        response = self.client.get(f'/api/inventory/updates/?productIds={self.product.pk},{self.foreign.pk}')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['products'], [{
            'productId': self.product.pk,
            'totalQuantity': 10,
            'availableQuantity': 10,
            'reservedQuantity': 0,
        }])

    def test_inventory_updates_rejects_bad_ids(self):
        response = self.client.get('/api/inventory/updates/?productIds=1,abc')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_inventory_stream(self):
        other = make_product(self.store, 'Unwatched', stock=3)
        response = self.client.get(f'/api/inventory/stream/?products={self.product.pk}')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['Content-Type'], 'text/event-stream')
        chunks = iter(response.streaming_content)

        def next_event():
            chunk = next(chunks).decode()
            self.assertTrue(chunk.startswith('data: '))
            return json.loads(chunk[len('data: '):])

        self.assertEqual(next_event()['type'], 'connected')
        initial = next_event()
        self.assertEqual(initial['productId'], self.product.pk)
        self.assertEqual(initial['availableQuantity'], 10)

        broadcaster = get_broadcaster()
        channel = f'store-{self.store.pk}'
        broadcaster.publish(channel, {'type': INVENTORY_CHANGED, 'productId': other.pk})
        broadcaster.publish(channel, {'type': INVENTORY_CHANGED, 'productId': self.product.pk,
                                      'availableQuantity': 7})
        self.assertEqual(next_event()['availableQuantity'], 7)

        self.assertEqual(next(chunks).decode(), ': heartbeat\n\n')
        response.close()
