"""Read-only movement history for variants.

No movement table is stored. The feed is rebuilt from the purchase, sale and
stock adjustment collections into an index keyed by variant id, held in the
context's ``movements`` cache bucket. Every recorder in
:mod:`mj_ledger.core_logic` evicts that bucket, so the index never outlives
the rows it was built from.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from . import data_manager, log, pricing
from .constants import Collection, MovementType, SaleStatus
from .core_logic import RuntimeContext, cache_bucket, get_variant
from .data_manager import (
    PurchaseItemRow,
    PurchaseRow,
    SaleItemRow,
    SaleRow,
    StockAdjustmentRow,
    SupplierRow,
)


CACHE_BUCKET = "movements"

DateBound = Union[date, datetime]


@dataclass(frozen=True)
class Movement:
    """One historical change to a variant's stock.

    ``qty`` is signed: purchases and void restores are positive, sales are
    negative, adjustments carry their own sign.
    """

    movement_id: str
    movement_type: MovementType
    date: str
    qty: int
    reference_id: str
    reference_no: Optional[str] = None
    notes: Optional[str] = None
    supplier_name: Optional[str] = None
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class SupplierSummary:
    """Per-supplier purchase history of a single variant."""

    supplier_id: str
    supplier_name: str
    total_qty: int
    purchase_count: int
    last_purchase_date: str
    total_cost: Decimal
    avg_unit_cost: Decimal


def _parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp; naive values are read as UTC."""

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        log.warning("Unparseable movement date '%s'; ordering it last", value)
        return datetime.min.replace(tzinfo=UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _as_start(bound: DateBound) -> datetime:
    if isinstance(bound, datetime):
        return bound if bound.tzinfo else bound.replace(tzinfo=UTC)
    return datetime.combine(bound, time.min, tzinfo=UTC)


def _as_end(bound: DateBound) -> datetime:
    # Returns an exclusive upper bound; a plain date covers the whole day.
    if isinstance(bound, datetime):
        bound = bound if bound.tzinfo else bound.replace(tzinfo=UTC)
        return bound + timedelta(microseconds=1)
    return datetime.combine(bound + timedelta(days=1), time.min, tzinfo=UTC)


def _adjustment_movement(adjustment: StockAdjustmentRow) -> Movement:
    notes = adjustment.reason
    if adjustment.notes:
        notes = f"{adjustment.reason}: {adjustment.notes}"
    return Movement(
        movement_id=adjustment.adjustment_id,
        movement_type=MovementType.ADJUSTMENT,
        date=adjustment.created_at,
        qty=adjustment.delta_qty,
        reference_id=adjustment.adjustment_id,
        notes=notes,
    )


def _purchase_movement(
    item: PurchaseItemRow,
    purchase: PurchaseRow,
    suppliers: Dict[str, SupplierRow],
) -> Movement:
    supplier = suppliers.get(purchase.supplier_id)
    return Movement(
        movement_id=item.item_id,
        movement_type=MovementType.PURCHASE,
        date=purchase.purchased_at,
        qty=item.qty,
        reference_id=item.purchase_id,
        reference_no=purchase.invoice_no,
        notes=purchase.notes,
        supplier_name=supplier.name if supplier else None,
        unit_cost=item.unit_cost,
    )


def _sale_movement(item: SaleItemRow, sale: SaleRow) -> Movement:
    # Both kinds are dated at checkout; the void time lives on the sale row.
    if sale.status == SaleStatus.VOIDED.value:
        return Movement(
            movement_id=item.item_id,
            movement_type=MovementType.VOID_RESTORE,
            date=sale.sold_at,
            qty=item.qty,
            reference_id=sale.sale_id,
            reference_no=sale.bill_no,
            notes=sale.void_reason,
        )
    return Movement(
        movement_id=item.item_id,
        movement_type=MovementType.SALE,
        date=sale.sold_at,
        qty=-item.qty,
        reference_id=sale.sale_id,
        reference_no=sale.bill_no,
    )


def build_movement_index(context: RuntimeContext) -> Dict[str, List[Movement]]:
    """Scan the transaction collections once and group movements by variant.

    Missing transaction sheets are treated as empty, as this is a display-only
    projection.
    """

    workbook = context.workbook
    adjustments = data_manager.load_collection(workbook, Collection.STOCK_ADJUSTMENTS, missing_ok=True)
    purchases = {
        purchase.purchase_id: purchase
        for purchase in data_manager.load_collection(workbook, Collection.PURCHASES, missing_ok=True)
    }
    suppliers = {
        supplier.supplier_id: supplier
        for supplier in data_manager.load_collection(workbook, Collection.SUPPLIERS, missing_ok=True)
    }
    sales = {
        sale.sale_id: sale
        for sale in data_manager.load_collection(workbook, Collection.SALES, missing_ok=True)
    }

    index: Dict[str, List[Movement]] = defaultdict(list)
    for adjustment in adjustments:
        index[adjustment.variant_id].append(_adjustment_movement(adjustment))
    for item in data_manager.load_collection(workbook, Collection.PURCHASE_ITEMS, missing_ok=True):
        purchase = purchases.get(item.purchase_id)
        if purchase is None:
            log.warning("Purchase item '%s' references unknown purchase '%s'; skipped", item.item_id, item.purchase_id)
            continue
        index[item.variant_id].append(_purchase_movement(item, purchase, suppliers))
    for item in data_manager.load_collection(workbook, Collection.SALE_ITEMS, missing_ok=True):
        sale = sales.get(item.sale_id)
        if sale is None:
            log.warning("Sale item '%s' references unknown sale '%s'; skipped", item.item_id, item.sale_id)
            continue
        index[item.variant_id].append(_sale_movement(item, sale))

    for entries in index.values():
        entries.sort(key=lambda movement: _parse_timestamp(movement.date), reverse=True)

    log.debug("Built movement index for %d variants", len(index))
    return dict(index)


def _movement_index(context: RuntimeContext) -> Dict[str, List[Movement]]:
    bucket = cache_bucket(context, CACHE_BUCKET)
    index = bucket.get("index")
    if index is None:
        index = build_movement_index(context)
        bucket["index"] = index
    return index


def get_stock_movements(
    context: RuntimeContext,
    variant_id: str,
    *,
    start: Optional[DateBound] = None,
    end: Optional[DateBound] = None,
    movement_type: Optional[MovementType] = None,
) -> List[Movement]:
    """Return the movement history of a variant, newest first.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        variant_id (str): Variant whose history is requested.
        start (date | datetime | None): Earliest movement to include.
        end (date | datetime | None): Latest movement to include. A plain date
            includes the whole day.
        movement_type (MovementType | None): Only return movements of this
            kind.

    Returns:
        list[Movement]: Matching movements sorted by date descending.

    Raises:
        NotFoundError: If ``variant_id`` is unknown.
    """

    get_variant(context, variant_id)
    movements = list(_movement_index(context).get(variant_id, ()))

    if movement_type is not None:
        movements = [movement for movement in movements if movement.movement_type == movement_type]
    if start is not None:
        lower = _as_start(start)
        movements = [movement for movement in movements if _parse_timestamp(movement.date) >= lower]
    if end is not None:
        upper = _as_end(end)
        movements = [movement for movement in movements if _parse_timestamp(movement.date) < upper]
    return movements


def net_movement(movements: Iterable[Movement]) -> int:
    """Sum the signed quantities of ``movements``."""

    return sum(movement.qty for movement in movements)


def get_supplier_summary(context: RuntimeContext, variant_id: str) -> List[SupplierSummary]:
    """Aggregate a variant's purchase history per supplier.

    ``avg_unit_cost`` is the supplier's historical average price for this
    variant (``total_cost / total_qty``), which is a different figure from
    the variant's own weighted-average cost. Results are ordered by quantity
    supplied, largest first.

    Raises:
        NotFoundError: If ``variant_id`` is unknown.
    """

    get_variant(context, variant_id)
    workbook = context.workbook
    purchases = {
        purchase.purchase_id: purchase
        for purchase in data_manager.load_collection(workbook, Collection.PURCHASES, missing_ok=True)
    }
    suppliers = {
        supplier.supplier_id: supplier
        for supplier in data_manager.load_collection(workbook, Collection.SUPPLIERS, missing_ok=True)
    }

    totals: Dict[str, Dict[str, object]] = {}
    for item in data_manager.load_collection(workbook, Collection.PURCHASE_ITEMS, missing_ok=True):
        if item.variant_id != variant_id:
            continue
        purchase = purchases.get(item.purchase_id)
        if purchase is None:
            continue
        entry = totals.setdefault(
            purchase.supplier_id,
            {"qty": 0, "cost": Decimal("0"), "purchases": set(), "last": purchase.purchased_at},
        )
        entry["qty"] += item.qty
        entry["cost"] += item.qty * item.unit_cost
        entry["purchases"].add(purchase.purchase_id)
        if _parse_timestamp(purchase.purchased_at) > _parse_timestamp(entry["last"]):
            entry["last"] = purchase.purchased_at

    summaries = []
    for supplier_id, entry in totals.items():
        supplier = suppliers.get(supplier_id)
        total_qty = entry["qty"]
        total_cost = pricing.round_money(entry["cost"])
        summaries.append(
            SupplierSummary(
                supplier_id=supplier_id,
                supplier_name=supplier.name if supplier else "Unknown",
                total_qty=total_qty,
                purchase_count=len(entry["purchases"]),
                last_purchase_date=entry["last"],
                total_cost=total_cost,
                avg_unit_cost=pricing.round_money(total_cost / total_qty) if total_qty else pricing.ZERO,
            )
        )
    summaries.sort(key=lambda summary: summary.total_qty, reverse=True)
    return summaries


__all__ = [
    "Movement",
    "SupplierSummary",
    "build_movement_index",
    "get_stock_movements",
    "net_movement",
    "get_supplier_summary",
]
