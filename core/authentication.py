"""
Token authentication for store terminals and public shop customers.

Tokens are signed with ``django.core.signing``; a store token resolves to a
``StoreContext`` (store + selected cashier) and a customer token to a
``CustomerContext`` (store + customer). Views read the context from
``request.user``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.core import signing
from rest_framework.authentication import BaseAuthentication
from rest_framework.permissions import BasePermission

logger = logging.getLogger(__name__)

TOKEN_SALT = 'pos.auth'
STORE_COOKIE = 'auth-token'
CUSTOMER_COOKIE = 'customer-auth-token'


@dataclass
class StoreContext:
    store: object
    selected_cashier: Optional[str] = None

    is_authenticated = True
    is_staff = False
    is_customer = False

    @property
    def cart_owner(self) -> str:
        return f"cashier:{self.selected_cashier or 'default'}"


@dataclass
class CustomerContext:
    store: object
    customer: object

    is_authenticated = True
    is_staff = False
    is_customer = True

    @property
    def cart_owner(self) -> str:
        return f"customer:{self.customer.pk}"


def issue_store_token(store, cashier: Optional[str] = None) -> str:
    payload = {'store_id': store.pk, 'is_customer': False}
    if cashier:
        payload['cashier'] = cashier
    return signing.dumps(payload, salt=TOKEN_SALT)


def issue_customer_token(customer) -> str:
    return signing.dumps(
        {'store_id': customer.store_id, 'customer_id': customer.pk, 'is_customer': True},
        salt=TOKEN_SALT
    )


def _extract_token(request, cookie_name: str) -> Optional[str]:
    header = request.META.get('HTTP_AUTHORIZATION', '')
    if header.startswith('Bearer '):
        return header[7:].strip()
    return request.COOKIES.get(cookie_name)


def _load_payload(token: str) -> Optional[dict]:
    try:
        return signing.loads(
            token,
            salt=TOKEN_SALT,
            max_age=getattr(settings, 'AUTH_TOKEN_MAX_AGE', 7 * 24 * 3600)
        )
    except signing.BadSignature as e:
        logger.info(f"Rejected auth token: {e}")
        return None


class StoreTokenAuthentication(BaseAuthentication):
    """Authenticates store/cashier tokens; customer tokens are ignored."""

    def authenticate(self, request):
        from inventory.models import Store

        token = _extract_token(request, STORE_COOKIE)
        if not token:
            return None
        payload = _load_payload(token)
        if not payload or payload.get('is_customer'):
            return None

        store = Store.objects.filter(pk=payload.get('store_id'), is_active=True).first()
        if store is None:
            return None
        return StoreContext(store=store, selected_cashier=payload.get('cashier')), token

    def authenticate_header(self, request):
        return 'Bearer'


class CustomerTokenAuthentication(BaseAuthentication):
    """Authenticates public shop customer tokens."""

    def authenticate(self, request):
        from inventory.models import Store
        from orders.models import Customer

        token = _extract_token(request, CUSTOMER_COOKIE)
        if not token:
            return None
        payload = _load_payload(token)
        if not payload or not payload.get('is_customer'):
            return None

        customer = Customer.objects.filter(
            pk=payload.get('customer_id'),
            store_id=payload.get('store_id'),
            is_active=True
        ).first()
        if customer is None:
            return None
        store = Store.objects.filter(pk=customer.store_id, is_active=True).first()
        if store is None:
            return None
        return CustomerContext(store=store, customer=customer), token

    def authenticate_header(self, request):
        return 'Bearer'


class IsStoreAuthenticated(BasePermission):
    message = 'Authentication required'

    def has_permission(self, request, view):
        return isinstance(request.user, StoreContext)


class IsCustomerAuthenticated(BasePermission):
    message = 'Customer authentication required'

    def has_permission(self, request, view):
        return isinstance(request.user, CustomerContext)


class IsStoreOrCustomer(BasePermission):
    message = 'Authentication required'

    def has_permission(self, request, view):
        return isinstance(request.user, (StoreContext, CustomerContext))
