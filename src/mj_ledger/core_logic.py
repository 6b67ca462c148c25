"""Ledger rules for the MJ stock ledger.

This module owns the authoritative ``stock_qty``/``avg_cost`` state of every
variant and the recorders (purchase, sale, void, stock adjustment) that change
it. All I/O goes through the Data Access Layer (DAL); every stock change goes
through :func:`adjust_stock`, the single place where the non-negative stock
invariant is enforced.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, pricing
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    AdjustmentReason,
    Collection,
    PaymentMode,
    PurchaseStatus,
    SaleStatus,
    UserRole,
    VariantStatus,
)
from .data_manager import (
    ProductRow,
    PurchaseItemRow,
    PurchaseRow,
    SaleItemRow,
    SaleRow,
    SettingsRow,
    StockAdjustmentRow,
    StorageFailure,
    SupplierRow,
    UserRow,
    VariantRow,
)


# Largest difference tolerated between caller-supplied and recomputed totals.
TOTALS_TOLERANCE = Decimal("0.01")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced variant, sale, purchase, or other record is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a stock change would drive ``stock_qty`` below zero."""

    def __init__(self, variant_id: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for variant '{variant_id}': available {available}, requested {requested}"
        )
        self.variant_id = variant_id
        self.available = available
        self.requested = requested


class AlreadyVoidedError(BusinessRuleViolation):
    """Raised when voiding a sale or purchase that is already ``VOIDED``."""


class DuplicateKeyError(BusinessRuleViolation):
    """Raised when a sku, barcode, or username is already taken."""


class TotalsMismatchError(BusinessRuleViolation):
    """Raised when caller-supplied sale totals disagree with the line items."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the ledger."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    loaded_stamp: Optional[int] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _store_state: Dict[str, Optional[int]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class PurchaseLine:
    """One delivered line: ``qty`` units of a variant at ``unit_cost`` each."""

    variant_id: str
    qty: int
    unit_cost: Decimal


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a supplier delivery."""

    supplier_id: str
    created_by: str
    items: Tuple[PurchaseLine, ...]
    purchased_at: Optional[datetime] = None
    invoice_no: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class SaleLine:
    """One cart line at checkout."""

    variant_id: str
    qty: int
    unit_price: Decimal


@dataclass(frozen=True)
class SaleCommand:
    """User intent for a checkout. Totals are verified against ``items``."""

    payment_mode: PaymentMode
    subtotal: Decimal
    discount_amount: Decimal
    discount_percent: Decimal
    tax_amount: Decimal
    tax_percent: Decimal
    total: Decimal
    created_by: str
    items: Tuple[SaleLine, ...]
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    timestamp: Optional[datetime] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class StockAdjustmentCommand:
    """User intent for a manual, quantity-only stock correction."""

    variant_id: str
    delta_qty: int
    reason: AdjustmentReason
    created_by: str
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None
    idempotency_key: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(prefix: str) -> str:
    """Generate a unique record identifier such as ``V-1f0c...``."""

    return f"{prefix}-{uuid.uuid4().hex}"


def cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold derived read models (for example the movement index) so they
    are not rebuilt on every call. Writers evict them via
    :func:`invalidate_cache`.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after mutating workbook state.

    With no names every bucket is dropped.
    """

    targets = names or tuple(context._cache)
    if not targets:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(targets))

    for name in targets:
        context._cache.pop(name, None)


@contextmanager
def unit_of_work(context: RuntimeContext, *collections: Collection) -> Iterator[None]:
    """Run a multi-write ledger operation atomically against the workbook.

    The listed collections are snapshotted on entry. If the body raises, each
    of them is written back from the snapshot and all caches are dropped, so a
    failed recorder call leaves no partial change behind. Nothing reaches disk
    until :func:`persist_context` is called.

    Args:
        context (RuntimeContext): Runtime context whose workbook is mutated.
        *collections (Collection): Every collection the body may write.
    """

    snapshot = {
        collection: data_manager.load_collection(context.workbook, collection)
        for collection in collections
    }
    try:
        yield
    except Exception:
        log.warning(
            "Rolling back changes to %s",
            ", ".join(collection.value for collection in collections),
        )
        for collection, rows in snapshot.items():
            data_manager.save_collection(context.workbook, collection, rows)
        invalidate_cache(context)
        raise


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the ledger.

    Resolves ``config.ini``, parses settings, opens the workbook, and records
    the workbook file's modification stamp so :func:`persist_context` can
    detect a second writer.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    stamp = data_manager.file_stamp(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, loaded_stamp=stamp)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to disk.

    Before writing, the workbook file's current modification stamp is compared
    with the one seen when it was loaded (or last saved by this context). A
    difference means another writer saved in between; saving now would silently
    discard their changes, so the save is refused.

    Raises:
        StorageFailure: If a concurrent write is detected or the save fails.
    """
    data_file = context.settings.data_file
    expected = context._store_state.get("stamp", context.loaded_stamp)
    current = data_manager.file_stamp(data_file)
    if expected is not None and current != expected:
        log.error("Workbook '%s' changed on disk since it was loaded; refusing to overwrite", data_file)
        raise StorageFailure(
            f"Workbook {data_file} was modified by another writer; refresh and retry"
        )

    data_manager.save_workbook(context.workbook, destination=data_file)
    context._store_state["stamp"] = data_manager.file_stamp(data_file)
    log.info("Persisted workbook '%s'", data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, a new
            modification stamp, and an empty cache.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        loaded_stamp=data_manager.file_stamp(context.settings.data_file),
    )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is zero, negative, or not an integer.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if pricing.to_decimal(amount) < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_items(items: Sequence[object]) -> None:
    """Validate that a purchase or sale carries at least one line."""
    if not items:
        log.error("Rejected transaction without items")
        raise ValueError("At least one item is required")


def _find_by_idempotency_key(rows: Sequence[Any], key: Optional[str]) -> Optional[Any]:
    if key is None:
        return None
    for row in rows:
        if row.idempotency_key == key:
            return row
    return None


# ---------------------------------------------------------------------------
# Settings and bill numbering
# ---------------------------------------------------------------------------


def get_settings(context: RuntimeContext) -> SettingsRow:
    """Return the shop settings, or the defaults when none are stored yet."""
    return data_manager.load_settings(context.workbook)


def update_settings(context: RuntimeContext, **changes: Any) -> SettingsRow:
    """Update display and policy fields of the settings singleton.

    ``last_bill_number`` may only move forward; rewinding it would reissue
    bill numbers that are already printed on receipts.

    Raises:
        BusinessRuleViolation: If ``last_bill_number`` would decrease.
    """
    current = get_settings(context)
    if "last_bill_number" in changes and changes["last_bill_number"] < current.last_bill_number:
        log.error(
            "Refused to rewind bill counter from %s to %s",
            current.last_bill_number,
            changes["last_bill_number"],
        )
        raise BusinessRuleViolation("The bill number counter cannot be decreased")
    updated = replace(current, **changes)
    data_manager.save_settings(context.workbook, updated)
    log.info("Updated settings: %s", ", ".join(sorted(changes)))
    return updated


def issue_bill_number(context: RuntimeContext) -> str:
    """Increment the stored bill counter and return the new bill number.

    Callers run this inside the same :func:`unit_of_work` as the sale it
    numbers, so the counter and the sale persist together or not at all.
    """
    settings = get_settings(context)
    bill_no = pricing.format_bill_number(settings.invoice_prefix, settings.last_bill_number)
    data_manager.save_settings(
        context.workbook,
        replace(settings, last_bill_number=settings.last_bill_number + 1),
    )
    log.debug("Issued bill number '%s'", bill_no)
    return bill_no


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


def list_variants(context: RuntimeContext, *, include_inactive: bool = True) -> List[VariantRow]:
    """Return variant rows in sheet order, optionally hiding inactive ones."""
    variants: List[VariantRow] = data_manager.load_collection(context.workbook, Collection.VARIANTS)  # type: ignore[assignment]
    if include_inactive:
        return variants
    return [variant for variant in variants if variant.is_active]


def get_variant(context: RuntimeContext, variant_id: str) -> VariantRow:
    """Resolve a variant by id.

    Raises:
        NotFoundError: If ``variant_id`` is unknown.
    """
    for variant in list_variants(context):
        if variant.variant_id == variant_id:
            return variant
    log.warning("Variant lookup failed for id '%s'", variant_id)
    raise NotFoundError(f"Unknown variant id: {variant_id}")


def find_variant_by_barcode(context: RuntimeContext, barcode: str) -> Optional[VariantRow]:
    """Return the variant scanned at the till, or ``None`` when no label matches."""
    for variant in list_variants(context):
        if variant.barcode == barcode:
            return variant
    return None


def list_low_stock_variants(context: RuntimeContext) -> List[VariantRow]:
    """Active variants at or below the shop's ``low_stock_threshold``."""
    threshold = get_settings(context).low_stock_threshold
    return [
        variant
        for variant in list_variants(context, include_inactive=False)
        if pricing.is_low_stock(variant.stock_qty, threshold)
    ]


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product by id.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """
    for product in data_manager.load_collection(context.workbook, Collection.PRODUCTS):
        if product.product_id == product_id:  # type: ignore[attr-defined]
            return product  # type: ignore[return-value]
    log.warning("Product lookup failed for id '%s'", product_id)
    raise NotFoundError(f"Unknown product id: {product_id}")


def list_suppliers(context: RuntimeContext) -> List[SupplierRow]:
    return data_manager.load_collection(context.workbook, Collection.SUPPLIERS)  # type: ignore[return-value]


def get_supplier(context: RuntimeContext, supplier_id: str) -> SupplierRow:
    """Resolve a supplier by id.

    Raises:
        NotFoundError: If ``supplier_id`` is unknown.
    """
    for supplier in list_suppliers(context):
        if supplier.supplier_id == supplier_id:
            return supplier
    log.warning("Supplier lookup failed for id '%s'", supplier_id)
    raise NotFoundError(f"Unknown supplier id: {supplier_id}")


def create_product(
    context: RuntimeContext,
    *,
    name: str,
    brand: str,
    category: str,
    description: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> ProductRow:
    """Append a product (the size/colour-independent catalogue entry)."""
    when = _resolve_timestamp(timestamp).isoformat()
    product = ProductRow(
        product_id=generate_id("P"),
        name=name,
        brand=brand,
        category=category,
        description=description,
        created_at=when,
        updated_at=when,
    )
    data_manager.append_record(context.workbook, Collection.PRODUCTS, product)
    log.info("Created product '%s' (%s)", product.product_id, name)
    return product


def create_supplier(
    context: RuntimeContext,
    *,
    name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> SupplierRow:
    supplier = SupplierRow(
        supplier_id=generate_id("SUP"),
        name=name,
        phone=phone,
        email=email,
        address=address,
        created_at=_resolve_timestamp(timestamp).isoformat(),
    )
    data_manager.append_record(context.workbook, Collection.SUPPLIERS, supplier)
    invalidate_cache(context, "movements")
    log.info("Created supplier '%s' (%s)", supplier.supplier_id, name)
    return supplier


def create_user(
    context: RuntimeContext,
    *,
    username: str,
    full_name: str,
    role: UserRole = UserRole.EMPLOYEE,
    is_active: bool = True,
    timestamp: Optional[datetime] = None,
) -> UserRow:
    """Register a shop user.

    Raises:
        DuplicateKeyError: If ``username`` is taken, ignoring case.
    """
    users: List[UserRow] = data_manager.load_collection(context.workbook, Collection.USERS)  # type: ignore[assignment]
    wanted = username.strip().casefold()
    if any(user.username.casefold() == wanted for user in users):
        log.warning("Username '%s' already exists", username)
        raise DuplicateKeyError(f"Username already exists: {username}")
    user = UserRow(
        user_id=generate_id("U"),
        username=username.strip(),
        full_name=full_name,
        role=role.value,
        is_active=is_active,
        created_at=_resolve_timestamp(timestamp).isoformat(),
    )
    data_manager.append_record(context.workbook, Collection.USERS, user)
    log.info("Created user '%s' (%s)", user.user_id, user.username)
    return user


def _ensure_unique_codes(
    variants: Sequence[VariantRow],
    *,
    sku: Optional[str],
    barcode: Optional[str],
    exclude_id: Optional[str] = None,
) -> None:
    for variant in variants:
        if variant.variant_id == exclude_id:
            continue
        if sku is not None and variant.sku == sku:
            log.warning("SKU '%s' already used by variant '%s'", sku, variant.variant_id)
            raise DuplicateKeyError(f"SKU already exists: {sku}")
        if barcode is not None and variant.barcode == barcode:
            log.warning("Barcode '%s' already used by variant '%s'", barcode, variant.variant_id)
            raise DuplicateKeyError(f"Barcode already exists: {barcode}")


def create_variant(
    context: RuntimeContext,
    *,
    product_id: str,
    sku: str,
    barcode: str,
    size: str,
    color: str,
    selling_price: Decimal,
    status: VariantStatus = VariantStatus.ACTIVE,
    timestamp: Optional[datetime] = None,
) -> VariantRow:
    """Create a sellable variant with empty stock and zero cost basis.

    Opening quantities are recorded afterwards as an ``OPENING_STOCK``
    adjustment or a purchase, never written here directly.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
        DuplicateKeyError: If ``sku`` or ``barcode`` is already in use.
        ValueError: If ``selling_price`` is negative.
    """
    get_product(context, product_id)
    require_nonnegative_money(selling_price)
    _ensure_unique_codes(list_variants(context), sku=sku, barcode=barcode)

    when = _resolve_timestamp(timestamp).isoformat()
    variant = VariantRow(
        variant_id=generate_id("V"),
        product_id=product_id,
        sku=sku,
        barcode=barcode,
        size=size,
        color=color,
        selling_price=pricing.round_money(selling_price),
        avg_cost=pricing.ZERO,
        stock_qty=0,
        status=status.value,
        created_at=when,
        updated_at=when,
    )
    data_manager.append_record(context.workbook, Collection.VARIANTS, variant)
    log.info("Created variant '%s' (sku=%s, barcode=%s)", variant.variant_id, sku, barcode)
    return variant


_EDITABLE_VARIANT_FIELDS = frozenset({"sku", "barcode", "size", "color", "selling_price"})


def update_variant(
    context: RuntimeContext,
    variant_id: str,
    *,
    timestamp: Optional[datetime] = None,
    **changes: Any,
) -> VariantRow:
    """Edit variant metadata. Stock and cost basis are not editable here.

    Raises:
        NotFoundError: If ``variant_id`` is unknown.
        DuplicateKeyError: If a new ``sku`` or ``barcode`` collides.
        BusinessRuleViolation: If a non-editable field is supplied.
    """
    illegal = set(changes) - _EDITABLE_VARIANT_FIELDS
    if illegal:
        log.error("Rejected variant update touching %s", ", ".join(sorted(illegal)))
        raise BusinessRuleViolation(
            f"Fields cannot be edited directly: {', '.join(sorted(illegal))}"
        )
    if "selling_price" in changes:
        require_nonnegative_money(changes["selling_price"])
        changes["selling_price"] = pricing.round_money(changes["selling_price"])

    variants = list_variants(context)
    index = _index_of_variant(variants, variant_id)
    _ensure_unique_codes(
        variants,
        sku=changes.get("sku"),
        barcode=changes.get("barcode"),
        exclude_id=variant_id,
    )
    updated = replace(
        variants[index],
        updated_at=_resolve_timestamp(timestamp).isoformat(),
        **changes,
    )
    variants[index] = updated
    data_manager.save_collection(context.workbook, Collection.VARIANTS, variants)
    log.info("Updated variant '%s' (%s)", variant_id, ", ".join(sorted(changes)) or "no fields")
    return updated


def set_variant_status(context: RuntimeContext, variant_id: str, status: VariantStatus) -> VariantRow:
    """Activate or deactivate a variant without touching its ledger state."""
    variants = list_variants(context)
    index = _index_of_variant(variants, variant_id)
    updated = replace(
        variants[index],
        status=status.value,
        updated_at=_resolve_timestamp(None).isoformat(),
    )
    variants[index] = updated
    data_manager.save_collection(context.workbook, Collection.VARIANTS, variants)
    log.info("Set variant '%s' status to %s", variant_id, status.value)
    return updated


def delete_variant(context: RuntimeContext, variant_id: str) -> None:
    """Hard-delete a variant that no transaction references.

    Raises:
        NotFoundError: If ``variant_id`` is unknown.
        BusinessRuleViolation: If any purchase item, sale item, or adjustment
            references the variant. Deactivate it instead.
    """
    variants = list_variants(context)
    index = _index_of_variant(variants, variant_id)
    for collection in (Collection.PURCHASE_ITEMS, Collection.SALE_ITEMS, Collection.STOCK_ADJUSTMENTS):
        rows = data_manager.load_collection(context.workbook, collection)
        if any(row.variant_id == variant_id for row in rows):  # type: ignore[attr-defined]
            log.error("Variant '%s' is referenced by %s; refusing delete", variant_id, collection.value)
            raise BusinessRuleViolation(
                f"Variant {variant_id} has recorded {collection.value}; deactivate it instead"
            )
    del variants[index]
    data_manager.save_collection(context.workbook, Collection.VARIANTS, variants)
    log.info("Deleted variant '%s'", variant_id)


def _index_of_variant(variants: Sequence[VariantRow], variant_id: str) -> int:
    for index, variant in enumerate(variants):
        if variant.variant_id == variant_id:
            return index
    log.warning("Variant lookup failed for id '%s'", variant_id)
    raise NotFoundError(f"Unknown variant id: {variant_id}")


# ---------------------------------------------------------------------------
# Stock mutation primitive
# ---------------------------------------------------------------------------


def adjust_stock(
    context: RuntimeContext,
    variant_id: str,
    qty_delta: int,
    new_unit_cost: Optional[Decimal] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> VariantRow:
    """Apply a signed quantity change to a variant's ledger state.

    This is the only function that writes ``stock_qty`` or ``avg_cost``.
    The whole variants collection is loaded, one row is changed, and the whole
    collection is saved back.

    When ``qty_delta`` is positive and ``new_unit_cost`` is supplied the
    weighted-average cost is recomputed; in every other case ``avg_cost`` is
    left untouched.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        variant_id (str): Variant to change.
        qty_delta (int): Signed change to ``stock_qty``.
        new_unit_cost (Decimal | None): Unit cost of inbound stock.
        timestamp (datetime | None): Value for ``updated_at``.

    Returns:
        VariantRow: The updated variant.

    Raises:
        NotFoundError: If ``variant_id`` is unknown.
        InsufficientStockError: If the change would make ``stock_qty``
            negative. Nothing is written in that case.
    """
    if isinstance(qty_delta, bool) or not isinstance(qty_delta, int):
        log.error("Stock delta must be an integer, got %r", qty_delta)
        raise ValueError("Stock delta must be a whole number")

    variants = list_variants(context)
    index = _index_of_variant(variants, variant_id)
    variant = variants[index]

    new_qty = variant.stock_qty + qty_delta
    if new_qty < 0:
        log.warning(
            "Insufficient stock for variant '%s': on hand %s, delta %s",
            variant_id,
            variant.stock_qty,
            qty_delta,
        )
        raise InsufficientStockError(variant_id, variant.stock_qty, -qty_delta)

    new_avg_cost = variant.avg_cost
    if qty_delta > 0 and new_unit_cost is not None:
        new_avg_cost = pricing.weighted_avg_cost(
            variant.stock_qty,
            variant.avg_cost,
            qty_delta,
            new_unit_cost,
        )

    updated = replace(
        variant,
        stock_qty=new_qty,
        avg_cost=new_avg_cost,
        updated_at=_resolve_timestamp(timestamp).isoformat(),
    )
    variants[index] = updated
    data_manager.save_collection(context.workbook, Collection.VARIANTS, variants)
    invalidate_cache(context, "movements")
    log.info(
        "Adjusted stock of variant '%s' by %+d (qty %s -> %s, avg cost %s -> %s)",
        variant_id,
        qty_delta,
        variant.stock_qty,
        new_qty,
        variant.avg_cost,
        new_avg_cost,
    )
    return updated


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def list_purchases(context: RuntimeContext) -> List[PurchaseRow]:
    return data_manager.load_collection(context.workbook, Collection.PURCHASES)  # type: ignore[return-value]


def get_purchase(context: RuntimeContext, purchase_id: str) -> PurchaseRow:
    """Resolve a purchase by id.

    Raises:
        NotFoundError: If ``purchase_id`` is unknown.
    """
    for purchase in list_purchases(context):
        if purchase.purchase_id == purchase_id:
            return purchase
    log.warning("Purchase lookup failed for id '%s'", purchase_id)
    raise NotFoundError(f"Unknown purchase id: {purchase_id}")


def list_purchase_items(context: RuntimeContext, purchase_id: Optional[str] = None) -> List[PurchaseItemRow]:
    items: List[PurchaseItemRow] = data_manager.load_collection(context.workbook, Collection.PURCHASE_ITEMS)  # type: ignore[assignment]
    if purchase_id is None:
        return items
    return [item for item in items if item.purchase_id == purchase_id]


def create_purchase(context: RuntimeContext, command: PurchaseCommand) -> PurchaseRow:
    """Record a supplier delivery and bring its stock in at cost.

    Each line raises the variant's stock through :func:`adjust_stock` with the
    line's unit cost, in item order, so several lines for the same variant are
    blended into the weighted-average cost one after another. The purchase and
    its items are appended afterwards. The whole call is one unit of work.

    A retry carrying an already recorded ``idempotency_key`` returns the
    original purchase without touching stock again.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (PurchaseCommand): Structured purchase intent.

    Returns:
        PurchaseRow: The recorded purchase.

    Raises:
        NotFoundError: If the supplier or any variant is unknown.
        ValueError: If there are no items, a quantity is not positive, or a
            unit cost is negative.
    """
    require_items(command.items)
    for line in command.items:
        require_positive_quantity(line.qty)
        require_nonnegative_money(line.unit_cost)

    existing = _find_by_idempotency_key(list_purchases(context), command.idempotency_key)
    if existing is not None:
        log.info("Purchase with idempotency key '%s' already recorded as '%s'", command.idempotency_key, existing.purchase_id)
        return existing

    get_supplier(context, command.supplier_id)
    for line in command.items:
        get_variant(context, line.variant_id)

    now = _resolve_timestamp(None)
    purchased_at = _resolve_timestamp(command.purchased_at)
    purchase_id = generate_id("PU")
    total_cost = pricing.round_money(
        sum((line.qty * pricing.to_decimal(line.unit_cost) for line in command.items), Decimal("0"))
    )
    purchase = PurchaseRow(
        purchase_id=purchase_id,
        supplier_id=command.supplier_id,
        purchased_at=purchased_at.isoformat(),
        invoice_no=command.invoice_no,
        total_cost=total_cost,
        notes=command.notes,
        created_by=command.created_by,
        created_at=now.isoformat(),
        idempotency_key=command.idempotency_key,
        status=PurchaseStatus.COMPLETED.value,
        voided_at=None,
        voided_by=None,
        void_reason=None,
    )
    items = [
        PurchaseItemRow(
            item_id=generate_id("PI"),
            purchase_id=purchase_id,
            variant_id=line.variant_id,
            qty=line.qty,
            unit_cost=pricing.round_money(line.unit_cost),
        )
        for line in command.items
    ]

    with unit_of_work(context, Collection.VARIANTS, Collection.PURCHASES, Collection.PURCHASE_ITEMS):
        for item in items:
            adjust_stock(context, item.variant_id, item.qty, item.unit_cost, timestamp=now)
        data_manager.append_record(context.workbook, Collection.PURCHASES, purchase)
        for item in items:
            data_manager.append_record(context.workbook, Collection.PURCHASE_ITEMS, item)

    invalidate_cache(context, "movements")
    log.info(
        "Recorded purchase '%s' from supplier '%s' (%d lines, total cost %s)",
        purchase_id,
        command.supplier_id,
        len(items),
        total_cost,
    )
    return purchase


def delete_purchase(context: RuntimeContext, purchase_id: str, *, retain_stock_effect: bool = False) -> None:
    """Remove a purchase and its items while KEEPING their stock effect.

    Deleting a purchase does not reverse the stock or cost changes it caused:
    the variants keep the quantities and weighted-average cost that the
    delivery produced. Because this is easy to misread as an undo, callers
    must acknowledge it by passing ``retain_stock_effect=True``. To take stock
    back out, record a negative stock adjustment instead.

    Raises:
        BusinessRuleViolation: If ``retain_stock_effect`` is not ``True``.
        NotFoundError: If ``purchase_id`` is unknown.
    """
    if retain_stock_effect is not True:
        log.error("Refused to delete purchase '%s' without acknowledging retained stock", purchase_id)
        raise BusinessRuleViolation(
            "Deleting a purchase does not reverse its stock; pass retain_stock_effect=True to confirm"
        )

    get_purchase(context, purchase_id)
    purchases = [purchase for purchase in list_purchases(context) if purchase.purchase_id != purchase_id]
    all_items = list_purchase_items(context)
    kept_items = [item for item in all_items if item.purchase_id != purchase_id]

    with unit_of_work(context, Collection.PURCHASES, Collection.PURCHASE_ITEMS):
        data_manager.save_collection(context.workbook, Collection.PURCHASES, purchases)
        data_manager.save_collection(context.workbook, Collection.PURCHASE_ITEMS, kept_items)

    invalidate_cache(context, "movements")
    log.warning(
        "Deleted purchase '%s' and %d items; their stock and cost effects were retained",
        purchase_id,
        len(all_items) - len(kept_items),
    )


def void_purchase(
    context: RuntimeContext,
    purchase_id: str,
    voided_by: str,
    reason: str,
    *,
    timestamp: Optional[datetime] = None,
) -> PurchaseRow:
    """Void a delivery and take its stock back out.

    The purchase and its items stay on record. Each item is reversed by a
    ``CORRECTION`` stock adjustment of ``-qty`` noted
    ``"Void purchase #<id>: <reason>"``, so the movement feed keeps both the
    delivery and its reversal. ``avg_cost`` is left as it is. ``COMPLETED`` to
    ``VOIDED`` is a one-way transition.

    Raises:
        NotFoundError: If ``purchase_id`` is unknown.
        AlreadyVoidedError: If the purchase is already voided.
        InsufficientStockError: If any variant no longer holds the delivered
            quantity.
        ValueError: If ``reason`` is blank.
    """
    if not reason or not reason.strip():
        log.error("Void of purchase '%s' rejected: no reason given", purchase_id)
        raise ValueError("A reason is required to void a purchase")

    purchase = get_purchase(context, purchase_id)
    if purchase.status == PurchaseStatus.VOIDED.value:
        log.error("Purchase '%s' is already voided", purchase_id)
        raise AlreadyVoidedError(f"Purchase {purchase_id} is already voided")

    items = list_purchase_items(context, purchase_id)
    required: Dict[str, int] = defaultdict(int)
    for item in items:
        required[item.variant_id] += item.qty
    for variant_id, qty in required.items():
        variant = get_variant(context, variant_id)
        if variant.stock_qty < qty:
            log.warning(
                "Cannot void purchase '%s': variant '%s' holds %s of %s delivered",
                purchase_id,
                variant_id,
                variant.stock_qty,
                qty,
            )
            raise InsufficientStockError(variant_id, variant.stock_qty, qty)

    when = _resolve_timestamp(timestamp)
    notes = f"Void purchase #{purchase_id}: {reason.strip()}"
    voided = replace(
        purchase,
        status=PurchaseStatus.VOIDED.value,
        voided_at=when.isoformat(),
        voided_by=voided_by,
        void_reason=reason.strip(),
    )
    purchases = [voided if row.purchase_id == purchase_id else row for row in list_purchases(context)]

    with unit_of_work(context, Collection.VARIANTS, Collection.STOCK_ADJUSTMENTS, Collection.PURCHASES):
        for item in items:
            adjust_stock(context, item.variant_id, -item.qty, timestamp=when)
            data_manager.append_record(
                context.workbook,
                Collection.STOCK_ADJUSTMENTS,
                StockAdjustmentRow(
                    adjustment_id=generate_id("ADJ"),
                    variant_id=item.variant_id,
                    delta_qty=-item.qty,
                    reason=AdjustmentReason.CORRECTION.value,
                    notes=notes,
                    created_at=when.isoformat(),
                    created_by=voided_by,
                    idempotency_key=None,
                ),
            )
        data_manager.save_collection(context.workbook, Collection.PURCHASES, purchases)

    invalidate_cache(context, "movements")
    log.info("Voided purchase '%s' (%d items reversed): %s", purchase_id, len(items), voided.void_reason)
    return voided


def update_purchase_metadata(
    context: RuntimeContext,
    purchase_id: str,
    *,
    invoice_no: Optional[str],
    notes: Optional[str],
) -> PurchaseRow:
    """Replace a purchase's invoice number and notes. Stock is never touched.

    Raises:
        NotFoundError: If ``purchase_id`` is unknown.
        BusinessRuleViolation: If the purchase is voided.
    """
    purchase = get_purchase(context, purchase_id)
    if purchase.status == PurchaseStatus.VOIDED.value:
        log.warning("Refused to edit voided purchase '%s'", purchase_id)
        raise BusinessRuleViolation(f"Purchase {purchase_id} is voided and cannot be edited")

    updated = replace(purchase, invoice_no=invoice_no, notes=notes)
    purchases = [updated if row.purchase_id == purchase_id else row for row in list_purchases(context)]
    with unit_of_work(context, Collection.PURCHASES):
        data_manager.save_collection(context.workbook, Collection.PURCHASES, purchases)

    invalidate_cache(context, "movements")
    log.info("Updated metadata of purchase '%s'", purchase_id)
    return updated


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def list_sales(context: RuntimeContext) -> List[SaleRow]:
    return data_manager.load_collection(context.workbook, Collection.SALES)  # type: ignore[return-value]


def get_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    """Resolve a sale by id.

    Raises:
        NotFoundError: If ``sale_id`` is unknown.
    """
    for sale in list_sales(context):
        if sale.sale_id == sale_id:
            return sale
    log.warning("Sale lookup failed for id '%s'", sale_id)
    raise NotFoundError(f"Unknown sale id: {sale_id}")


def list_sale_items(context: RuntimeContext, sale_id: Optional[str] = None) -> List[SaleItemRow]:
    items: List[SaleItemRow] = data_manager.load_collection(context.workbook, Collection.SALE_ITEMS)  # type: ignore[assignment]
    if sale_id is None:
        return items
    return [item for item in items if item.sale_id == sale_id]


def get_sale_profit(context: RuntimeContext, sale_id: str) -> Decimal:
    """Profit of a sale from its cost snapshots; voided sales earn nothing."""
    sale = get_sale(context, sale_id)
    if sale.status == SaleStatus.VOIDED.value:
        return pricing.ZERO
    return pricing.sale_profit(list_sale_items(context, sale_id))


def verify_sale_totals(command: SaleCommand, settings: SettingsRow) -> pricing.SaleTotals:
    """Recompute the bill from the cart and compare it with the caller's figures.

    The tax rate must be the shop's configured rate. Each of subtotal,
    discount, tax and total may differ from the recomputed value by at most
    ``TOTALS_TOLERANCE``.

    Returns:
        pricing.SaleTotals: The recomputed totals.

    Raises:
        TotalsMismatchError: On a different tax rate or any figure outside the
            tolerance.
    """
    if pricing.to_decimal(command.tax_percent) != settings.tax_percent:
        log.error("Sale tax rate %s differs from shop rate %s", command.tax_percent, settings.tax_percent)
        raise TotalsMismatchError(
            f"Tax rate {command.tax_percent}% does not match the shop rate {settings.tax_percent}%"
        )

    expected = pricing.compute_sale_totals(command.items, command.discount_percent, settings.tax_percent)
    for name in ("subtotal", "discount_amount", "tax_amount", "total"):
        supplied = pricing.to_decimal(getattr(command, name))
        computed = getattr(expected, name)
        if abs(supplied - computed) > TOTALS_TOLERANCE:
            log.error("Sale %s mismatch: supplied %s, computed %s", name, supplied, computed)
            raise TotalsMismatchError(f"Sale {name} {supplied} does not match computed {computed}")
    return expected


def create_sale(context: RuntimeContext, command: SaleCommand) -> SaleRow:
    """Record a checkout, take its stock out, and issue a bill number.

    Steps, all inside one unit of work:

    1. Verify the caller's totals against the cart (:func:`verify_sale_totals`).
    2. Check every variant exists, is active, and has enough stock for the summed
       quantity requested across lines.
    3. Issue the next bill number.
    4. For each line, freeze the variant's current ``avg_cost`` as
       ``unit_cost_at_sale`` and take ``qty`` out via :func:`adjust_stock`.
    5. Append the sale (status ``COMPLETED``) and its items.

    A retry carrying an already recorded ``idempotency_key`` returns the
    original sale.

    Raises:
        NotFoundError: If a variant is unknown.
        InsufficientStockError: If any variant lacks the requested stock.
        TotalsMismatchError: If caller totals disagree with the cart.
        BusinessRuleViolation: If the payment mode is unsupported or a
            variant is inactive.
        ValueError: If there are no items, a quantity is not positive, or a
            price is negative.
    """
    require_items(command.items)
    for line in command.items:
        require_positive_quantity(line.qty)
        require_nonnegative_money(line.unit_price)
    if not isinstance(command.payment_mode, PaymentMode):
        log.error("Unsupported payment mode provided: %s", command.payment_mode)
        raise BusinessRuleViolation(f"Unsupported payment mode: {command.payment_mode}")

    existing = _find_by_idempotency_key(list_sales(context), command.idempotency_key)
    if existing is not None:
        log.info("Sale with idempotency key '%s' already recorded as '%s'", command.idempotency_key, existing.bill_no)
        return existing

    totals = verify_sale_totals(command, get_settings(context))

    required: Dict[str, int] = defaultdict(int)
    for line in command.items:
        required[line.variant_id] += line.qty
    for variant_id, qty in required.items():
        variant = get_variant(context, variant_id)
        if not variant.is_active:
            log.warning("Variant '%s' (sku %s) is inactive; refusing sale", variant_id, variant.sku)
            raise BusinessRuleViolation(f"Variant {variant.sku} is inactive and cannot be sold")
        if variant.stock_qty < qty:
            log.warning(
                "Insufficient stock for variant '%s' (sku %s): available %s, requested %s",
                variant_id,
                variant.sku,
                variant.stock_qty,
                qty,
            )
            raise InsufficientStockError(variant_id, variant.stock_qty, qty)

    timestamp = _resolve_timestamp(command.timestamp)
    sale_id = generate_id("S")

    with unit_of_work(
        context,
        Collection.VARIANTS,
        Collection.SALES,
        Collection.SALE_ITEMS,
        Collection.SETTINGS,
    ):
        bill_no = issue_bill_number(context)
        items: List[SaleItemRow] = []
        for line in command.items:
            unit_cost_at_sale = get_variant(context, line.variant_id).avg_cost
            items.append(
                SaleItemRow(
                    item_id=generate_id("SI"),
                    sale_id=sale_id,
                    variant_id=line.variant_id,
                    qty=line.qty,
                    unit_price=pricing.round_money(line.unit_price),
                    unit_cost_at_sale=unit_cost_at_sale,
                )
            )
            adjust_stock(context, line.variant_id, -line.qty, timestamp=timestamp)

        sale = SaleRow(
            sale_id=sale_id,
            bill_no=bill_no,
            sold_at=timestamp.isoformat(),
            customer_name=command.customer_name,
            customer_phone=command.customer_phone,
            payment_mode=command.payment_mode.value,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            discount_percent=pricing.round_money(command.discount_percent),
            tax_amount=totals.tax_amount,
            tax_percent=pricing.round_money(command.tax_percent),
            total=totals.total,
            status=SaleStatus.COMPLETED.value,
            created_by=command.created_by,
            created_at=timestamp.isoformat(),
            voided_at=None,
            voided_by=None,
            void_reason=None,
            idempotency_key=command.idempotency_key,
        )
        data_manager.append_record(context.workbook, Collection.SALES, sale)
        for item in items:
            data_manager.append_record(context.workbook, Collection.SALE_ITEMS, item)

    invalidate_cache(context, "movements")
    log.info(
        "Recorded sale '%s' bill %s (%d lines, total %s, mode %s)",
        sale_id,
        bill_no,
        len(items),
        sale.total,
        sale.payment_mode,
    )
    return sale


def void_sale(
    context: RuntimeContext,
    sale_id: str,
    voided_by: str,
    reason: str,
    *,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Void a completed sale and put its stock back.

    Every item's quantity is returned through :func:`adjust_stock` without a
    unit cost, so the variants keep their current ``avg_cost``. ``COMPLETED``
    to ``VOIDED`` is a one-way transition.

    Raises:
        NotFoundError: If ``sale_id`` is unknown.
        AlreadyVoidedError: If the sale is already voided.
        ValueError: If ``reason`` is blank.
    """
    if not reason or not reason.strip():
        log.error("Void of sale '%s' rejected: no reason given", sale_id)
        raise ValueError("A reason is required to void a sale")

    sales = list_sales(context)
    for index, sale in enumerate(sales):
        if sale.sale_id == sale_id:
            break
    else:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise NotFoundError(f"Unknown sale id: {sale_id}")

    if sale.status == SaleStatus.VOIDED.value:
        log.error("Sale '%s' (bill %s) is already voided", sale_id, sale.bill_no)
        raise AlreadyVoidedError(f"Sale {sale.bill_no} is already voided")

    when = _resolve_timestamp(timestamp)
    items = list_sale_items(context, sale_id)
    voided = replace(
        sale,
        status=SaleStatus.VOIDED.value,
        voided_at=when.isoformat(),
        voided_by=voided_by,
        void_reason=reason.strip(),
    )

    with unit_of_work(context, Collection.VARIANTS, Collection.SALES):
        for item in items:
            adjust_stock(context, item.variant_id, item.qty, timestamp=when)
        sales[index] = voided
        data_manager.save_collection(context.workbook, Collection.SALES, sales)

    invalidate_cache(context, "movements")
    log.info("Voided sale '%s' bill %s (%d items restored): %s", sale_id, sale.bill_no, len(items), voided.void_reason)
    return voided


# ---------------------------------------------------------------------------
# Stock adjustments
# ---------------------------------------------------------------------------


def list_stock_adjustments(context: RuntimeContext, variant_id: Optional[str] = None) -> List[StockAdjustmentRow]:
    adjustments: List[StockAdjustmentRow] = data_manager.load_collection(
        context.workbook, Collection.STOCK_ADJUSTMENTS
    )  # type: ignore[assignment]
    if variant_id is None:
        return adjustments
    return [adjustment for adjustment in adjustments if adjustment.variant_id == variant_id]


def create_stock_adjustment(context: RuntimeContext, command: StockAdjustmentCommand) -> StockAdjustmentRow:
    """Record a manual stock correction.

    Adjustments change quantity only: ``avg_cost`` stays as it is for either
    sign, ``OPENING_STOCK`` included. :func:`adjust_stock` is the authority on
    whether a negative delta is allowed.

    Raises:
        ValueError: If ``delta_qty`` is zero or not an integer.
        BusinessRuleViolation: If the reason code is unsupported.
        NotFoundError: If the variant is unknown.
        InsufficientStockError: If a negative delta exceeds stock on hand.
    """
    if isinstance(command.delta_qty, bool) or not isinstance(command.delta_qty, int) or command.delta_qty == 0:
        log.error("Adjustment delta validation failed: %r", command.delta_qty)
        raise ValueError("Adjustment quantity must be a non-zero whole number")
    if not isinstance(command.reason, AdjustmentReason):
        log.error("Unsupported adjustment reason provided: %s", command.reason)
        raise BusinessRuleViolation(f"Unsupported adjustment reason: {command.reason}")

    existing = _find_by_idempotency_key(list_stock_adjustments(context), command.idempotency_key)
    if existing is not None:
        log.info("Adjustment with idempotency key '%s' already recorded as '%s'", command.idempotency_key, existing.adjustment_id)
        return existing

    timestamp = _resolve_timestamp(command.timestamp)
    adjustment = StockAdjustmentRow(
        adjustment_id=generate_id("ADJ"),
        variant_id=command.variant_id,
        delta_qty=command.delta_qty,
        reason=command.reason.value,
        notes=command.notes,
        created_at=timestamp.isoformat(),
        created_by=command.created_by,
        idempotency_key=command.idempotency_key,
    )

    with unit_of_work(context, Collection.VARIANTS, Collection.STOCK_ADJUSTMENTS):
        adjust_stock(context, command.variant_id, command.delta_qty, timestamp=timestamp)
        data_manager.append_record(context.workbook, Collection.STOCK_ADJUSTMENTS, adjustment)

    invalidate_cache(context, "movements")
    log.info(
        "Recorded %s adjustment '%s' of %+d for variant '%s'",
        adjustment.reason,
        adjustment.adjustment_id,
        adjustment.delta_qty,
        adjustment.variant_id,
    )
    return adjustment
