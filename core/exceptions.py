"""
Domain error taxonomy and the DRF exception handler that maps it to responses.

Services raise these; views let them propagate and the handler turns them into
``{"error": ..., "detail": ...}`` payloads with the matching status code.
"""
import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for errors raised by the stock and order services."""
    status_code = status.HTTP_400_BAD_REQUEST
    error = 'Error'


class NotFoundError(DomainError):
    """Referenced record does not resolve within the caller's store."""
    status_code = status.HTTP_404_NOT_FOUND
    error = 'Not Found'


class InsufficientStockError(DomainError):
    """Raised when a guarded stock update finds too little stock."""
    error = 'Insufficient Stock'

    def __init__(self, product_id, requested: int, available: int, name: str = ''):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. "
            f"Available: {available}, Requested: {requested}"
        )


class InvalidTransitionError(DomainError):
    """The order's current state does not allow the requested action."""
    error = 'Invalid Transition'


class OrderValidationError(DomainError):
    """Raised when order or cart input fails validation."""
    error = 'Validation Error'


class TransactionUnsupported(Exception):
    """The database cannot scope a multi-row transaction."""


class StockConsistencyError(DomainError):
    """
    A fallback batch failed and could not be fully compensated.

    Stock levels for the products in ``pending`` may no longer match the
    orders that reference them and need manual reconciliation.
    """
    status_code = status.HTTP_409_CONFLICT
    error = 'Stock Consistency Error'

    def __init__(self, original: Exception, pending):
        self.original = original
        self.pending = list(pending)
        super().__init__(
            f"Stock update failed ({original}) and {len(self.pending)} "
            f"step(s) could not be undone"
        )


def api_exception_handler(exc, context):
    """Map ``DomainError`` subclasses to JSON responses, defer the rest to DRF."""
    if isinstance(exc, DomainError):
        if isinstance(exc, StockConsistencyError):
            logger.error(f"Stock consistency risk: {exc}; pending={exc.pending}")
        else:
            logger.info(f"{exc.error}: {exc}")
        return Response(
            {'error': exc.error, 'detail': str(exc)},
            status=exc.status_code
        )
    return exception_handler(exc, context)
