"""
Stock Ledger - the only code allowed to change product quantities.

Every mutation is a single UPDATE built from F() expressions, with the stock
precondition in the same statement's WHERE clause:

    reserve:  available >= q        reserved += q, available -= q
    release:  (none, clamped)       r = min(reserved, q); reserved -= r, available += r
    commit:   quantity >= q,        quantity -= q, reserved -= held,
              reserved >= held,     available -= q - held
              available >= q - held
    restore:  (none)                quantity += q, available += q
    adjust:   available >= -d       quantity += d, available += d

so two writers racing on the same product are serialized by the database and
the loser fails the guard instead of overselling. Each of these keeps
``available + reserved == quantity`` (also a CHECK constraint on the table)
and writes a ``StockMovement`` row inside the same transaction.

Multi-product work goes through ``StockLedger.batch()``: one database
transaction when the backend supports it, otherwise independent updates with
a compensation log that is unwound if a later step fails.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from typing import Dict, Iterable, List, Optional, Tuple

from django.conf import settings
from django.db import connection, models, transaction
from django.db.models import F, Q, Value
from django.db.models.functions import Least
from django.utils import timezone

from core.exceptions import (
    InsufficientStockError,
    NotFoundError,
    OrderValidationError,
    StockConsistencyError,
    TransactionUnsupported,
)
from core.realtime import INVENTORY_CHANGED, get_broadcaster, make_event, safe_publish, store_channel
from .models import Product, StockMovement

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ('id', 'store_id', 'name', 'quantity', 'reserved_quantity', 'available_quantity')


@dataclass(frozen=True)
class StockSnapshot:
    """Quantities of one product as read right after a mutation."""
    product_id: int
    store_id: int
    name: str
    quantity: int
    reserved_quantity: int
    available_quantity: int

    @classmethod
    def from_row(cls, row: Dict) -> 'StockSnapshot':
        return cls(
            product_id=row['id'],
            store_id=row['store_id'],
            name=row['name'],
            quantity=row['quantity'],
            reserved_quantity=row['reserved_quantity'],
            available_quantity=row['available_quantity'],
        )

    def as_payload(self) -> Dict:
        return {
            'productId': self.product_id,
            'totalQuantity': self.quantity,
            'availableQuantity': self.available_quantity,
            'reservedQuantity': self.reserved_quantity,
        }


def _positive(qty) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise OrderValidationError("Quantity must be a positive integer")
    return qty


class StockLedger:
    """
    Owner of product quantity arithmetic.

    Args:
        broadcaster: receives an ``inventory-changed`` event per mutation
        use_transactions: force the fallback protocol when False
    """

    def __init__(self, broadcaster=None, use_transactions: Optional[bool] = None):
        self.broadcaster = broadcaster or get_broadcaster()
        self.use_transactions = use_transactions

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def reserve(self, product_id, qty: int, store_id=None, reason='', reference='') -> StockSnapshot:
        """Hold ``qty`` units for a cart."""
        qty = _positive(qty)
        with transaction.atomic():
            updated = self._apply(
                product_id, store_id,
                Q(available_quantity__gte=qty),
                reserved_quantity=F('reserved_quantity') + qty,
                available_quantity=F('available_quantity') - qty,
            )
            if not updated:
                raise self._shortfall(product_id, store_id, qty)
            snapshot = self._read(product_id)
            self._log(snapshot, StockMovement.Action.RESERVATION, 0, -qty, reason, reference)

        logger.debug(f"Reserved {qty} of product {product_id}: {snapshot}")
        self._announce(snapshot)
        return snapshot

    def release(self, product_id, qty: int, store_id=None, reason='', reference='') -> Tuple[StockSnapshot, int]:
        """
        Return up to ``qty`` held units to available stock.

        The amount is clamped to the current reservation so replayed or
        duplicate releases cannot drive ``reserved_quantity`` negative.
        Returns the snapshot and the number of units actually released.
        """
        qty = _positive(qty)
        releasing = Least(F('reserved_quantity'), Value(qty), output_field=models.IntegerField())
        with transaction.atomic():
            before = (
                self._scoped(product_id, store_id)
                .select_for_update()
                .values_list('reserved_quantity', flat=True)
                .first()
            )
            if before is None:
                raise NotFoundError(f"Product not found: {product_id}")
            self._apply(
                product_id, store_id, None,
                reserved_quantity=F('reserved_quantity') - releasing,
                available_quantity=F('available_quantity') + releasing,
            )
            snapshot = self._read(product_id)
            released = before - snapshot.reserved_quantity
            if released:
                self._log(snapshot, StockMovement.Action.RELEASE, 0, released, reason, reference)

        if released:
            logger.debug(f"Released {released}/{qty} of product {product_id}: {snapshot}")
            self._announce(snapshot)
        return snapshot, released

    def commit(self, product_id, qty: int, held: int = 0, store_id=None, reason='', reference='') -> StockSnapshot:
        """
        Permanently deduct ``qty`` units for a confirmed order.

        ``held`` of those units were reserved by the caller's cart and come out
        of ``reserved_quantity``; the rest must be available right now.
        """
        qty = _positive(qty)
        if isinstance(held, bool) or not isinstance(held, int) or not 0 <= held <= qty:
            raise OrderValidationError(f"Held quantity must be between 0 and {qty}")
        free = qty - held
        with transaction.atomic():
            updated = self._apply(
                product_id, store_id,
                Q(quantity__gte=qty, reserved_quantity__gte=held, available_quantity__gte=free),
                quantity=F('quantity') - qty,
                reserved_quantity=F('reserved_quantity') - held,
                available_quantity=F('available_quantity') - free,
            )
            if not updated:
                raise self._shortfall(product_id, store_id, qty, extra=held)
            snapshot = self._read(product_id)
            self._log(snapshot, StockMovement.Action.SALE, -qty, -free, reason, reference)

        logger.debug(f"Committed {qty} (held {held}) of product {product_id}: {snapshot}")
        self._announce(snapshot)
        return snapshot

    def restore(self, product_id, qty: int, store_id=None, reason='', reference='') -> StockSnapshot:
        """Undo a commit: put ``qty`` units back into sellable stock."""
        return self._unwind_commit(product_id, _positive(qty), 0, store_id, reason=reason, reference=reference)

    def adjust(self, product_id, delta: int, store_id=None, reason='', reference='') -> StockSnapshot:
        """Manual stock correction (received goods, shrinkage, recount)."""
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise OrderValidationError("Adjustment must be a non-zero integer")
        guard = Q(available_quantity__gte=-delta) if delta < 0 else None
        action = StockMovement.Action.RESTOCK if delta > 0 else StockMovement.Action.ADJUSTMENT
        with transaction.atomic():
            updated = self._apply(
                product_id, store_id, guard,
                quantity=F('quantity') + delta,
                available_quantity=F('available_quantity') + delta,
            )
            if not updated:
                raise self._shortfall(product_id, store_id, -delta)
            snapshot = self._read(product_id)
            self._log(snapshot, action, delta, delta, reason, reference)

        logger.info(f"Adjusted product {product_id} by {delta:+d}: {snapshot}")
        self._announce(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self, product_id, store_id=None) -> StockSnapshot:
        row = self._scoped(product_id, store_id).values(*SNAPSHOT_FIELDS).first()
        if row is None:
            raise NotFoundError(f"Product not found: {product_id}")
        return StockSnapshot.from_row(row)

    def snapshots(self, product_ids: Iterable, store_id) -> List[StockSnapshot]:
        rows = Product.objects.filter(pk__in=list(product_ids), store_id=store_id).values(*SNAPSHOT_FIELDS)
        return [StockSnapshot.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Multi-product batches
    # ------------------------------------------------------------------

    def probe_transactions(self) -> None:
        """Raise ``TransactionUnsupported`` if a multi-row transaction can't be opened."""
        if self.use_transactions is False or not getattr(settings, 'STOCK_LEDGER_USE_TRANSACTIONS', True):
            raise TransactionUnsupported("disabled by configuration")
        if not connection.features.supports_transactions:
            raise TransactionUnsupported(f"{connection.vendor} backend has no transaction support")

    @contextmanager
    def batch(self):
        """
        Scope for a logically atomic multi-product update.

        Usage:
            with ledger.batch() as batch:
                batch.restore(old_product, 2)
                batch.commit(new_product, 3)
        """
        try:
            self.probe_transactions()
        except TransactionUnsupported as e:
            logger.warning(f"Transactions unavailable ({e}); stock batch runs with compensation")
            stock_batch = StockBatch(self, transactional=False)
            try:
                yield stock_batch
            except Exception as exc:
                stock_batch.compensate(exc)
                raise
            return

        with transaction.atomic():
            yield StockBatch(self, transactional=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _scoped(self, product_id, store_id):
        queryset = Product.objects.filter(pk=product_id)
        if store_id is not None:
            queryset = queryset.filter(store_id=store_id)
        return queryset

    def _apply(self, product_id, store_id, guard: Optional[Q], **changes) -> int:
        queryset = self._scoped(product_id, store_id)
        if guard is not None:
            queryset = queryset.filter(guard)
        return queryset.update(updated_at=timezone.now(), **changes)

    def _read(self, product_id) -> StockSnapshot:
        return StockSnapshot.from_row(
            Product.objects.filter(pk=product_id).values(*SNAPSHOT_FIELDS).get()
        )

    def _shortfall(self, product_id, store_id, requested: int, extra: int = 0) -> Exception:
        """Explain why a guarded update matched no row."""
        row = self._scoped(product_id, store_id).values('name', 'available_quantity', 'reserved_quantity').first()
        if row is None:
            return NotFoundError(f"Product not found: {product_id}")
        available = row['available_quantity'] + min(extra, row['reserved_quantity'])
        logger.info(
            f"Stock guard failed for product {product_id}: "
            f"requested {requested}, available {available}"
        )
        return InsufficientStockError(product_id, requested, available, name=row['name'])

    def _unwind_commit(self, product_id, qty: int, held: int, store_id=None, reason='', reference='') -> StockSnapshot:
        with transaction.atomic():
            updated = self._apply(
                product_id, store_id, None,
                quantity=F('quantity') + qty,
                reserved_quantity=F('reserved_quantity') + held,
                available_quantity=F('available_quantity') + (qty - held),
            )
            if not updated:
                raise NotFoundError(f"Product not found: {product_id}")
            snapshot = self._read(product_id)
            self._log(snapshot, StockMovement.Action.RESTORE, qty, qty - held, reason, reference)

        logger.debug(f"Restored {qty} (re-held {held}) of product {product_id}: {snapshot}")
        self._announce(snapshot)
        return snapshot

    def _log(self, snapshot: StockSnapshot, action: str, quantity_change: int, available_change: int,
             reason: str = '', reference: str = '') -> None:
        StockMovement.objects.create(
            store_id=snapshot.store_id,
            product_id=snapshot.product_id,
            product_name=snapshot.name,
            action=action,
            quantity_change=quantity_change,
            available_change=available_change,
            quantity_after=snapshot.quantity,
            reserved_after=snapshot.reserved_quantity,
            available_after=snapshot.available_quantity,
            reason=(reason or '')[:255],
            reference=(reference or '')[:100],
        )

    def _announce(self, snapshot: StockSnapshot) -> None:
        event = make_event(INVENTORY_CHANGED, **snapshot.as_payload())
        transaction.on_commit(
            partial(safe_publish, self.broadcaster, store_channel(snapshot.store_id), event)
        )


class StockBatch:
    """
    Records the steps of a multi-product update.

    In fallback mode each applied step leaves an inverse on the undo log;
    ``compensate`` replays them newest first when the batch fails.
    """

    def __init__(self, ledger: StockLedger, transactional: bool):
        self.ledger = ledger
        self.transactional = transactional
        self._undo: List[Tuple[str, object]] = []

    def reserve(self, product_id, qty, store_id=None, reason='', reference=''):
        snapshot = self.ledger.reserve(product_id, qty, store_id=store_id, reason=reason, reference=reference)
        self._record(f"release {qty} of product {product_id}",
                     partial(self.ledger.release, product_id, qty, store_id, **self._undoing(reference)))
        return snapshot

    def release(self, product_id, qty, store_id=None, reason='', reference=''):
        snapshot, released = self.ledger.release(product_id, qty, store_id=store_id, reason=reason, reference=reference)
        if released:
            self._record(f"reserve {released} of product {product_id}",
                         partial(self.ledger.reserve, product_id, released, store_id, **self._undoing(reference)))
        return snapshot, released

    def commit(self, product_id, qty, held=0, store_id=None, reason='', reference=''):
        snapshot = self.ledger.commit(product_id, qty, held=held, store_id=store_id, reason=reason, reference=reference)
        self._record(f"restore {qty} (held {held}) of product {product_id}",
                     partial(self.ledger._unwind_commit, product_id, qty, held, store_id, **self._undoing(reference)))
        return snapshot

    def restore(self, product_id, qty, store_id=None, reason='', reference=''):
        snapshot = self.ledger.restore(product_id, qty, store_id=store_id, reason=reason, reference=reference)
        self._record(f"commit {qty} of product {product_id}",
                     partial(self.ledger.commit, product_id, qty, 0, store_id, **self._undoing(reference)))
        return snapshot

    def record_undo(self, description: str, undo) -> None:
        """
        Register the inverse of a non-stock write made inside the batch.

        Sale rows written between stock steps are rolled back with the stock
        when the batch has no transaction to do it.
        """
        self._record(description, undo)

    def _record(self, description: str, undo) -> None:
        self._undo.append((description, undo))

    @staticmethod
    def _undoing(reference: str) -> Dict:
        return {'reason': 'compensation', 'reference': reference}

    def compensate(self, exc: Exception) -> None:
        """Apply the inverse of every recorded step, newest first."""
        if self.transactional or not self._undo:
            return
        failed = []
        for description, undo in reversed(self._undo):
            try:
                undo()
            except Exception as e:
                logger.error(f"Compensation step '{description}' failed: {e}")
                failed.append(description)
        self._undo.clear()
        if failed:
            raise StockConsistencyError(exc, failed) from exc
        logger.warning(f"Stock batch failed ({exc}); earlier steps were undone")
