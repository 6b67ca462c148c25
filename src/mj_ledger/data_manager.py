"""Data access layer for the MJ stock ledger.

This module provides low-level helpers that read from and write to the master
workbook. Every worksheet is one *collection* of records; ledger rules belong
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting and stamping the Excel file.
3. Collection operations: loading typed rows, appending new rows and
   replacing a whole collection in one go.
"""


from __future__ import annotations

import configparser
from dataclasses import astuple, dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import Collection, PurchaseStatus, VariantStatus


CONFIG_FILE_NAME = "config.ini"
_CENT = Decimal("0.01")


class StorageFailure(RuntimeError):
    """Raised when the workbook cannot be written or was changed underneath us."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_user_id: str


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``users`` sheet."""

    user_id: str
    username: str
    full_name: str
    role: str
    is_active: bool
    created_at: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``products`` sheet."""

    product_id: str
    name: str
    brand: str
    category: str
    description: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class VariantRow:
    """In-memory view of a row from the ``variants`` sheet.

    ``stock_qty`` and ``avg_cost`` form the ledger state of the variant and are
    only ever changed through :func:`mj_ledger.core_logic.adjust_stock`.
    """

    variant_id: str
    product_id: str
    sku: str
    barcode: str
    size: str
    color: str
    selling_price: Decimal
    avg_cost: Decimal
    stock_qty: int
    status: str
    created_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.status == VariantStatus.ACTIVE.value


@dataclass(frozen=True)
class SupplierRow:
    """In-memory view of a row from the ``suppliers`` sheet."""

    supplier_id: str
    name: str
    phone: Optional[str]
    email: Optional[str]
    address: Optional[str]
    created_at: str


@dataclass(frozen=True)
class PurchaseRow:
    """In-memory view of a row from the ``purchases`` sheet."""

    purchase_id: str
    supplier_id: str
    purchased_at: str
    invoice_no: Optional[str]
    total_cost: Decimal
    notes: Optional[str]
    created_by: str
    created_at: str
    idempotency_key: Optional[str]
    status: str
    voided_at: Optional[str]
    voided_by: Optional[str]
    void_reason: Optional[str]


@dataclass(frozen=True)
class PurchaseItemRow:
    """In-memory view of a row from the ``purchase_items`` sheet."""

    item_id: str
    purchase_id: str
    variant_id: str
    qty: int
    unit_cost: Decimal


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``sales`` sheet."""

    sale_id: str
    bill_no: str
    sold_at: str
    customer_name: Optional[str]
    customer_phone: Optional[str]
    payment_mode: str
    subtotal: Decimal
    discount_amount: Decimal
    discount_percent: Decimal
    tax_amount: Decimal
    tax_percent: Decimal
    total: Decimal
    status: str
    created_by: str
    created_at: str
    voided_at: Optional[str]
    voided_by: Optional[str]
    void_reason: Optional[str]
    idempotency_key: Optional[str]


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``sale_items`` sheet."""

    item_id: str
    sale_id: str
    variant_id: str
    qty: int
    unit_price: Decimal
    unit_cost_at_sale: Decimal


@dataclass(frozen=True)
class StockAdjustmentRow:
    """In-memory view of a row from the ``stock_adjustments`` sheet."""

    adjustment_id: str
    variant_id: str
    delta_qty: int
    reason: str
    notes: Optional[str]
    created_at: str
    created_by: str
    idempotency_key: Optional[str]


@dataclass(frozen=True)
class SettingsRow:
    """The single row stored on the ``settings`` sheet."""

    shop_name: str
    address: str
    phone: str
    email: Optional[str]
    currency: str
    currency_symbol: str
    tax_percent: Decimal
    invoice_prefix: str
    low_stock_threshold: int
    last_bill_number: int


# Header titles per collection. The order matches the dataclass field order.
COLLECTION_COLUMNS: Dict[Collection, Tuple[str, ...]] = {
    Collection.USERS: ("UserID", "Username", "FullName", "Role", "IsActive", "CreatedAt"),
    Collection.PRODUCTS: ("ProductID", "Name", "Brand", "Category", "Description", "CreatedAt", "UpdatedAt"),
    Collection.VARIANTS: (
        "VariantID",
        "ProductID",
        "SKU",
        "Barcode",
        "Size",
        "Color",
        "SellingPrice",
        "AvgCost",
        "StockQty",
        "Status",
        "CreatedAt",
        "UpdatedAt",
    ),
    Collection.SUPPLIERS: ("SupplierID", "Name", "Phone", "Email", "Address", "CreatedAt"),
    Collection.PURCHASES: (
        "PurchaseID",
        "SupplierID",
        "PurchasedAt",
        "InvoiceNo",
        "TotalCost",
        "Notes",
        "CreatedBy",
        "CreatedAt",
        "IdempotencyKey",
        "Status",
        "VoidedAt",
        "VoidedBy",
        "VoidReason",
    ),
    Collection.PURCHASE_ITEMS: ("ItemID", "PurchaseID", "VariantID", "Qty", "UnitCost"),
    Collection.SALES: (
        "SaleID",
        "BillNo",
        "SoldAt",
        "CustomerName",
        "CustomerPhone",
        "PaymentMode",
        "Subtotal",
        "DiscountAmount",
        "DiscountPercent",
        "TaxAmount",
        "TaxPercent",
        "Total",
        "Status",
        "CreatedBy",
        "CreatedAt",
        "VoidedAt",
        "VoidedBy",
        "VoidReason",
        "IdempotencyKey",
    ),
    Collection.SALE_ITEMS: ("ItemID", "SaleID", "VariantID", "Qty", "UnitPrice", "UnitCostAtSale"),
    Collection.STOCK_ADJUSTMENTS: (
        "AdjustmentID",
        "VariantID",
        "DeltaQty",
        "Reason",
        "Notes",
        "CreatedAt",
        "CreatedBy",
        "IdempotencyKey",
    ),
    Collection.SETTINGS: (
        "ShopName",
        "Address",
        "Phone",
        "Email",
        "Currency",
        "CurrencySymbol",
        "TaxPercent",
        "InvoicePrefix",
        "LowStockThreshold",
        "LastBillNumber",
    ),
}


def default_settings() -> SettingsRow:
    """Return the settings used when the ``settings`` sheet is still empty."""

    return SettingsRow(
        shop_name="MJ Textiles",
        address="123 Main Street, City Center, Mumbai 400001",
        phone="+91 98765 43210",
        email="contact@mjtextiles.com",
        currency="INR",
        currency_symbol="₹",
        tax_percent=Decimal("5.00"),
        invoice_prefix="MJT",
        low_stock_threshold=10,
        last_bill_number=0,
    )


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_user_id=default_user,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Raises:
        StorageFailure: If the file cannot be written.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise StorageFailure(f"Unable to save workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def file_stamp(data_file: Path) -> Optional[int]:
    """Return the modification stamp (ns) of ``data_file`` or ``None`` if absent.

    The stamp captured when a workbook is opened is compared against the
    current one before saving, which is how a second writer is detected.
    """

    try:
        return Path(data_file).expanduser().resolve().stat().st_mtime_ns
    except FileNotFoundError:
        return None


def load_collection(workbook: Workbook, collection: Collection, *, missing_ok: bool = False) -> List[object]:
    """Load every record of ``collection`` as typed row dataclasses.

    Header and completely empty rows are skipped. Records keep their sheet
    order.

    Args:
        workbook (Workbook): Workbook containing the collection's sheet.
        collection (Collection): Collection to read.
        missing_ok (bool): When ``True`` a missing sheet yields an empty list
            instead of raising. Only display-only readers should opt in.

    Returns:
        list: Row dataclasses matching ``collection``.

    Raises:
        KeyError: If the sheet is missing and ``missing_ok`` is ``False``.
    """

    if collection.value not in workbook.sheetnames:
        if missing_ok:
            log.warning("Sheet '%s' missing; treating collection as empty", collection.value)
            return []
        raise KeyError(f"Worksheet not found: {collection.value}")

    deserialize = _DESERIALIZERS[collection]
    sheet = workbook[collection.value]
    return [
        deserialize(raw)
        for raw in sheet.iter_rows(min_row=2, values_only=True)
        if any(cell is not None for cell in raw)
    ]


def append_record(workbook: Workbook, collection: Collection, record: object) -> None:
    """Append a single record to the end of ``collection``.

    Raises:
        StorageFailure: If the sheet backing ``collection`` does not exist.
    """

    sheet = _writable_sheet(workbook, collection)
    sheet.append(serialize_row(record))


def save_collection(workbook: Workbook, collection: Collection, records: Sequence[object]) -> None:
    """Replace the whole content of ``collection`` with ``records``.

    The sheet is rebuilt at the same position with its original header row and
    ``records`` written back in order. There is no per-record update.

    Raises:
        StorageFailure: If the sheet backing ``collection`` does not exist.
    """

    old_sheet = _writable_sheet(workbook, collection)
    header = [cell.value for cell in old_sheet[1]] or list(COLLECTION_COLUMNS[collection])
    position = workbook.sheetnames.index(collection.value)
    workbook.remove(old_sheet)
    sheet = workbook.create_sheet(title=collection.value, index=position)
    sheet.append(header)
    for record in records:
        sheet.append(serialize_row(record))
    log.debug("Saved %d records to '%s'", len(records), collection.value)


def load_settings(workbook: Workbook) -> SettingsRow:
    """Return the settings singleton, falling back to :func:`default_settings`."""

    rows = load_collection(workbook, Collection.SETTINGS, missing_ok=True)
    if not rows:
        return default_settings()
    return rows[0]  # type: ignore[return-value]


def save_settings(workbook: Workbook, settings: SettingsRow) -> None:
    """Persist the settings singleton."""

    save_collection(workbook, Collection.SETTINGS, [settings])


def _writable_sheet(workbook: Workbook, collection: Collection):
    try:
        return workbook[collection.value]
    except KeyError as exc:
        log.error("Cannot write to missing sheet '%s'", collection.value)
        raise StorageFailure(f"Worksheet not found: {collection.value}") from exc


def serialize_row(record: object) -> list[object]:
    """Convert a row dataclass into the worksheet column ordering.

    Field order equals column order, so the dataclass tuple is written as-is;
    :class:`~decimal.Decimal` values are kept for precision.
    """

    return list(astuple(record))


def _to_text(value: object) -> str:
    return str(value) if value is not None else ""


def _to_optional_text(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _to_money(value: object) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def _to_int(value: object) -> int:
    if value is None or value == "":
        return 0
    return int(Decimal(str(value)))


def _to_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


def _padded(raw_row: Sequence[object], width: int) -> Sequence[object]:
    # Trailing empty cells are not always materialised by openpyxl.
    values = tuple(raw_row)
    if len(values) < width:
        values = values + (None,) * (width - len(values))
    return values[:width]


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    user_id, username, full_name, role, is_active, created_at = _padded(raw_row, 6)
    return UserRow(
        user_id=_to_text(user_id),
        username=_to_text(username),
        full_name=_to_text(full_name),
        role=_to_text(role),
        is_active=_to_bool(is_active),
        created_at=_to_text(created_at),
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    product_id, name, brand, category, description, created_at, updated_at = _padded(raw_row, 7)
    return ProductRow(
        product_id=_to_text(product_id),
        name=_to_text(name),
        brand=_to_text(brand),
        category=_to_text(category),
        description=_to_optional_text(description),
        created_at=_to_text(created_at),
        updated_at=_to_text(updated_at),
    )


def deserialize_variant(raw_row: Sequence[object]) -> VariantRow:
    """Convert a raw worksheet row into a strongly typed variant record.

    Money columns are normalised to two-decimal :class:`~decimal.Decimal`
    values and ``StockQty`` to ``int`` so that Excel's float storage never
    leaks into the ledger arithmetic.
    """

    (
        variant_id,
        product_id,
        sku,
        barcode,
        size,
        color,
        selling_price,
        avg_cost,
        stock_qty,
        status,
        created_at,
        updated_at,
    ) = _padded(raw_row, 12)
    return VariantRow(
        variant_id=_to_text(variant_id),
        product_id=_to_text(product_id),
        sku=_to_text(sku),
        barcode=_to_text(barcode),
        size=_to_text(size),
        color=_to_text(color),
        selling_price=_to_money(selling_price),
        avg_cost=_to_money(avg_cost),
        stock_qty=_to_int(stock_qty),
        status=_to_text(status) or VariantStatus.ACTIVE.value,
        created_at=_to_text(created_at),
        updated_at=_to_text(updated_at),
    )


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    supplier_id, name, phone, email, address, created_at = _padded(raw_row, 6)
    return SupplierRow(
        supplier_id=_to_text(supplier_id),
        name=_to_text(name),
        phone=_to_optional_text(phone),
        email=_to_optional_text(email),
        address=_to_optional_text(address),
        created_at=_to_text(created_at),
    )


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    (
        purchase_id,
        supplier_id,
        purchased_at,
        invoice_no,
        total_cost,
        notes,
        created_by,
        created_at,
        idempotency_key,
        status,
        voided_at,
        voided_by,
        void_reason,
    ) = _padded(raw_row, 13)
    return PurchaseRow(
        purchase_id=_to_text(purchase_id),
        supplier_id=_to_text(supplier_id),
        purchased_at=_to_text(purchased_at),
        invoice_no=_to_optional_text(invoice_no),
        total_cost=_to_money(total_cost),
        notes=_to_optional_text(notes),
        created_by=_to_text(created_by),
        created_at=_to_text(created_at),
        idempotency_key=_to_optional_text(idempotency_key),
        status=_to_text(status) or PurchaseStatus.COMPLETED.value,
        voided_at=_to_optional_text(voided_at),
        voided_by=_to_optional_text(voided_by),
        void_reason=_to_optional_text(void_reason),
    )


def deserialize_purchase_item(raw_row: Sequence[object]) -> PurchaseItemRow:
    item_id, purchase_id, variant_id, qty, unit_cost = _padded(raw_row, 5)
    return PurchaseItemRow(
        item_id=_to_text(item_id),
        purchase_id=_to_text(purchase_id),
        variant_id=_to_text(variant_id),
        qty=_to_int(qty),
        unit_cost=_to_money(unit_cost),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    (
        sale_id,
        bill_no,
        sold_at,
        customer_name,
        customer_phone,
        payment_mode,
        subtotal,
        discount_amount,
        discount_percent,
        tax_amount,
        tax_percent,
        total,
        status,
        created_by,
        created_at,
        voided_at,
        voided_by,
        void_reason,
        idempotency_key,
    ) = _padded(raw_row, 19)
    return SaleRow(
        sale_id=_to_text(sale_id),
        bill_no=_to_text(bill_no),
        sold_at=_to_text(sold_at),
        customer_name=_to_optional_text(customer_name),
        customer_phone=_to_optional_text(customer_phone),
        payment_mode=_to_text(payment_mode),
        subtotal=_to_money(subtotal),
        discount_amount=_to_money(discount_amount),
        discount_percent=_to_money(discount_percent),
        tax_amount=_to_money(tax_amount),
        tax_percent=_to_money(tax_percent),
        total=_to_money(total),
        status=_to_text(status),
        created_by=_to_text(created_by),
        created_at=_to_text(created_at),
        voided_at=_to_optional_text(voided_at),
        voided_by=_to_optional_text(voided_by),
        void_reason=_to_optional_text(void_reason),
        idempotency_key=_to_optional_text(idempotency_key),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    item_id, sale_id, variant_id, qty, unit_price, unit_cost_at_sale = _padded(raw_row, 6)
    return SaleItemRow(
        item_id=_to_text(item_id),
        sale_id=_to_text(sale_id),
        variant_id=_to_text(variant_id),
        qty=_to_int(qty),
        unit_price=_to_money(unit_price),
        unit_cost_at_sale=_to_money(unit_cost_at_sale),
    )


def deserialize_stock_adjustment(raw_row: Sequence[object]) -> StockAdjustmentRow:
    (
        adjustment_id,
        variant_id,
        delta_qty,
        reason,
        notes,
        created_at,
        created_by,
        idempotency_key,
    ) = _padded(raw_row, 8)
    return StockAdjustmentRow(
        adjustment_id=_to_text(adjustment_id),
        variant_id=_to_text(variant_id),
        delta_qty=_to_int(delta_qty),
        reason=_to_text(reason),
        notes=_to_optional_text(notes),
        created_at=_to_text(created_at),
        created_by=_to_text(created_by),
        idempotency_key=_to_optional_text(idempotency_key),
    )


def deserialize_settings(raw_row: Sequence[object]) -> SettingsRow:
    (
        shop_name,
        address,
        phone,
        email,
        currency,
        currency_symbol,
        tax_percent,
        invoice_prefix,
        low_stock_threshold,
        last_bill_number,
    ) = _padded(raw_row, 10)
    return SettingsRow(
        shop_name=_to_text(shop_name),
        address=_to_text(address),
        phone=_to_text(phone),
        email=_to_optional_text(email),
        currency=_to_text(currency),
        currency_symbol=_to_text(currency_symbol),
        tax_percent=_to_money(tax_percent),
        invoice_prefix=_to_text(invoice_prefix),
        low_stock_threshold=_to_int(low_stock_threshold),
        last_bill_number=_to_int(last_bill_number),
    )


_DESERIALIZERS: Dict[Collection, Callable[[Sequence[object]], object]] = {
    Collection.USERS: deserialize_user,
    Collection.PRODUCTS: deserialize_product,
    Collection.VARIANTS: deserialize_variant,
    Collection.SUPPLIERS: deserialize_supplier,
    Collection.PURCHASES: deserialize_purchase,
    Collection.PURCHASE_ITEMS: deserialize_purchase_item,
    Collection.SALES: deserialize_sale,
    Collection.SALE_ITEMS: deserialize_sale_item,
    Collection.STOCK_ADJUSTMENTS: deserialize_stock_adjustment,
    Collection.SETTINGS: deserialize_settings,
}
