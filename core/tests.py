"""
Tests for authentication, error mapping, realtime broadcast and rate limiting.
"""
import json
from io import StringIO
from unittest.mock import MagicMock, patch

from django.core import signing
from django.core.management import CommandError, call_command
from django.test import RequestFactory, TestCase, override_settings
from rest_framework import serializers, status
from rest_framework.response import Response

from core.authentication import (
    CustomerContext,
    CustomerTokenAuthentication,
    StoreContext,
    StoreTokenAuthentication,
    TOKEN_SALT,
    issue_customer_token,
    issue_store_token,
)
from core.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    StockConsistencyError,
    api_exception_handler,
)
from core.rate_limiting import get_client_key, rate_limit
from core.realtime import (
    INVENTORY_CHANGED,
    InMemoryBroadcaster,
    NullBroadcaster,
    RedisBroadcaster,
    get_broadcaster,
    make_event,
    reset_broadcaster,
    safe_publish,
    store_channel,
)
from inventory.models import Store
from orders.models import Customer


class TokenAuthenticationTestCase(TestCase):

    def setUp(self):
        self.factory = RequestFactory()
        self.store = Store.objects.create(name='Test Store', slug='test-store')
        self.customer = Customer.objects.create(store=self.store, name='Ana')

    def request(self, token=None, cookies=None):
        extra = {'HTTP_AUTHORIZATION': f'Bearer {token}'} if token else {}
        request = self.factory.get('/api/products/', **extra)
        request.COOKIES.update(cookies or {})
        return request

    def test_store_token_resolves_cashier(self):
        user, _ = StoreTokenAuthentication().authenticate(self.request(issue_store_token(self.store, 'Maria')))

        self.assertIsInstance(user, StoreContext)
        self.assertEqual(user.store, self.store)
        self.assertEqual(user.selected_cashier, 'Maria')
        self.assertEqual(user.cart_owner, 'cashier:Maria')

    def test_store_token_without_cashier(self):
        user, _ = StoreTokenAuthentication().authenticate(self.request(issue_store_token(self.store)))
        self.assertIsNone(user.selected_cashier)
        self.assertEqual(user.cart_owner, 'cashier:default')

    def test_customer_token(self):
        token = issue_customer_token(self.customer)

        self.assertIsNone(StoreTokenAuthentication().authenticate(self.request(token)))
        user, _ = CustomerTokenAuthentication().authenticate(self.request(token))
        self.assertIsInstance(user, CustomerContext)
        self.assertEqual(user.customer, self.customer)
        self.assertEqual(user.cart_owner, f'customer:{self.customer.pk}')

    def test_store_token_is_not_a_customer_token(self):
        token = issue_store_token(self.store)
        self.assertIsNone(CustomerTokenAuthentication().authenticate(self.request(token)))

    def test_cookie_token(self):
        request = self.request(cookies={'auth-token': issue_store_token(self.store)})
        user, _ = StoreTokenAuthentication().authenticate(request)
        self.assertEqual(user.store, self.store)

    def test_tampered_token(self):
        token = issue_store_token(self.store) + 'x'
        self.assertIsNone(StoreTokenAuthentication().authenticate(self.request(token)))

    def test_token_signed_with_other_salt(self):
        token = signing.dumps({'store_id': self.store.pk, 'is_customer': False}, salt='other')
        self.assertIsNone(StoreTokenAuthentication().authenticate(self.request(token)))

    @override_settings(AUTH_TOKEN_MAX_AGE=-1)
    def test_expired_token(self):
        token = issue_store_token(self.store)
        self.assertIsNone(StoreTokenAuthentication().authenticate(self.request(token)))

    def test_inactive_store_or_customer(self):
        store_token = issue_store_token(self.store)
        customer_token = issue_customer_token(self.customer)
        self.store.is_active = False
        self.store.save()

        self.assertIsNone(StoreTokenAuthentication().authenticate(self.request(store_token)))
        self.assertIsNone(CustomerTokenAuthentication().authenticate(self.request(customer_token)))

    def test_no_token(self):
        self.assertIsNone(StoreTokenAuthentication().authenticate(self.request()))


class ExceptionHandlerTestCase(TestCase):

    def test_domain_errors_map_to_status(self):
        cases = [
            (NotFoundError('Product not found: 9'), status.HTTP_404_NOT_FOUND, 'Not Found'),
            (InsufficientStockError(1, 3, 2, name='Cola'), status.HTTP_400_BAD_REQUEST, 'Insufficient Stock'),
            (InvalidTransitionError('Sale is already cancelled'), status.HTTP_400_BAD_REQUEST, 'Invalid Transition'),
            (StockConsistencyError(RuntimeError('boom'), ['restore 2 of product 1']),
             status.HTTP_409_CONFLICT, 'Stock Consistency Error'),
        ]
        for exc, status_code, error in cases:
            response = api_exception_handler(exc, {})
            self.assertEqual(response.status_code, status_code)
            self.assertEqual(response.data['error'], error)
            self.assertEqual(response.data['detail'], str(exc))

    def test_insufficient_stock_message(self):
        exc = InsufficientStockError(1, 3, 2, name='Cola')
        self.assertEqual(str(exc), 'Insufficient stock for Cola. Available: 2, Requested: 3')

    def test_drf_errors_use_default_handler(self):
        response = api_exception_handler(serializers.ValidationError({'quantity': 'bad'}), {})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('quantity', response.data)

    def test_unknown_errors_propagate(self):
        self.assertIsNone(api_exception_handler(ValueError('boom'), {}))


class RealtimeTestCase(TestCase):

    def tearDown(self):
        reset_broadcaster()

    def test_subscribers_receive_their_channel(self):
        broadcaster = InMemoryBroadcaster()
        subscription = broadcaster.subscribe(store_channel(1))
        other = broadcaster.subscribe(store_channel(2))

        event = make_event(INVENTORY_CHANGED, productId=7, availableQuantity=3)
        broadcaster.publish(store_channel(1), event)

        self.assertEqual(subscription.get(timeout=0.1), event)
        self.assertIsNone(other.get(timeout=0.01))
        self.assertIn('timestamp', event)

    def test_closed_subscription_stops_receiving(self):
        broadcaster = InMemoryBroadcaster()
        subscription = broadcaster.subscribe('store-1')
        subscription.close()

        broadcaster.publish('store-1', make_event(INVENTORY_CHANGED))

        self.assertIsNone(subscription.get(timeout=0.01))
        self.assertEqual(len(broadcaster.events('store-1')), 1)

    def test_safe_publish_swallows_failures(self):
        broadcaster = MagicMock()
        broadcaster.publish.side_effect = ConnectionError('redis down')

        with self.assertLogs('core.realtime', level='ERROR'):
            safe_publish(broadcaster, 'store-1', make_event(INVENTORY_CHANGED))

    @override_settings(INVENTORY_BROADCASTER='core.realtime.NullBroadcaster')
    def test_default_broadcaster_from_settings(self):
        reset_broadcaster()
        broadcaster = get_broadcaster()

        self.assertIsInstance(broadcaster, NullBroadcaster)
        self.assertIs(get_broadcaster(), broadcaster)

    def test_redis_broadcaster_publishes_json(self):
        client = MagicMock()
        broadcaster = RedisBroadcaster(client=client)

        broadcaster.publish('store-1', {'type': INVENTORY_CHANGED, 'productId': 7})

        channel, payload = client.publish.call_args[0]
        self.assertEqual(channel, 'store-1')
        self.assertEqual(json.loads(payload)['productId'], 7)

    def test_redis_subscription_decodes_messages(self):
        client = MagicMock()
        pubsub = client.pubsub.return_value
        pubsub.get_message.side_effect = [
            {'type': 'message', 'data': '{"type": "inventory-changed", "productId": 7}'},
            None,
            {'type': 'message', 'data': 'not json'},
        ]
        subscription = RedisBroadcaster(client=client).subscribe('store-1')

        self.assertEqual(subscription.get(timeout=1)['productId'], 7)
        self.assertIsNone(subscription.get(timeout=1))
        self.assertIsNone(subscription.get(timeout=1))
        pubsub.subscribe.assert_called_once_with('store-1')

        subscription.close()
        pubsub.close.assert_called_once()


class RateLimitTestCase(TestCase):

    def setUp(self):
        self.factory = RequestFactory()
        self.store = Store.objects.create(name='Test Store', slug='test-store')

    def test_client_key_prefers_cart_owner(self):
        request = self.factory.get('/')
        request.user = StoreContext(store=self.store, selected_cashier='Maria')
        self.assertEqual(get_client_key(request), f'store-{self.store.pk}:cashier:Maria')

    def test_client_key_falls_back_to_ip(self):
        request = self.factory.get('/', HTTP_X_FORWARDED_FOR='203.0.113.5, 10.0.0.1')
        self.assertEqual(get_client_key(request), '203.0.113.5')

    @override_settings(RATE_LIMIT_ENABLED=True)
    def test_decorator_limits_requests(self):
        class View:
            @rate_limit(2, 60)
            def get(self, request):
                return Response({'ok': True})

        client = MagicMock()
        client.incr.side_effect = [1, 2, 3]
        client.ttl.return_value = 42
        request = self.factory.get('/')

        with patch('core.rate_limiting.get_redis_client', return_value=client):
            responses = [View().get(request) for _ in range(3)]

        self.assertEqual([r.status_code for r in responses], [200, 200, 429])
        self.assertEqual(responses[0]['X-RateLimit-Remaining'], '1')
        self.assertEqual(responses[2]['Retry-After'], '42')
        client.expire.assert_called_once()

    @override_settings(RATE_LIMIT_ENABLED=True)
    def test_fails_open_without_redis(self):
        class View:
            @rate_limit(1, 60)
            def get(self, request):
                return Response({'ok': True})

        with patch('core.rate_limiting.get_redis_client', return_value=None):
            responses = [View().get(self.factory.get('/')) for _ in range(3)]

        self.assertTrue(all(r.status_code == 200 for r in responses))


class IssueTokenCommandTestCase(TestCase):

    def setUp(self):
        self.store = Store.objects.create(name='Test Store', slug='test-store')

    def test_store_token(self):
        out = StringIO()
        call_command('issue_token', '--store', str(self.store.pk), '--cashier', 'Maria', stdout=out, stderr=StringIO())

        payload = signing.loads(out.getvalue().strip(), salt=TOKEN_SALT)
        self.assertEqual(payload, {'store_id': self.store.pk, 'is_customer': False, 'cashier': 'Maria'})

    def test_customer_token(self):
        customer = Customer.objects.create(store=self.store, name='Ana')
        out = StringIO()
        call_command('issue_token', '--store', str(self.store.pk), '--customer', str(customer.pk),
                     stdout=out, stderr=StringIO())

        payload = signing.loads(out.getvalue().strip(), salt=TOKEN_SALT)
        self.assertTrue(payload['is_customer'])
        self.assertEqual(payload['customer_id'], customer.pk)

    def test_unknown_store(self):
        with self.assertRaises(CommandError):
            call_command('issue_token', '--store', '99999', stdout=StringIO(), stderr=StringIO())


class HealthCheckTestCase(TestCase):

    def test_healthy(self):
        response = self.client.get('/health/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'healthy')
        self.assertEqual(response.json()['stockBatches'], 'transactional')

    @override_settings(STOCK_LEDGER_USE_TRANSACTIONS=False)
    def test_reports_compensating_batches(self):
        self.assertEqual(self.client.get('/health/').json()['stockBatches'], 'compensating')
