"""Command-line entry points for the MJ stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the ledger, and
printing read-only reports. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log, movements, pricing
from .constants import AdjustmentReason, MovementType, PaymentMode, VariantStatus


LineItem = Tuple[str, int, Decimal]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mj-ledger",
        description="Stock ledger tools for the MJ Textiles workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as purchases and sales."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-supplier": register_add_supplier_command(subparsers),
        "add-variant": register_add_variant_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "sale": register_sale_command(subparsers),
        "void-sale": register_void_sale_command(subparsers),
        "adjust": register_adjust_command(subparsers),
        "delete-purchase": register_delete_purchase_command(subparsers),
        "void-purchase": register_void_purchase_command(subparsers),
        "edit-purchase": register_edit_purchase_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as stock and movement reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "movements": register_movements_command(subparsers),
        "suppliers": register_suppliers_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_line_item(raw: str) -> LineItem:
    """Parse a ``VARIANT:QTY:AMOUNT`` triple given on the command line."""
    parts = raw.split(":")
    if len(parts) != 3 or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected VARIANT:QTY:AMOUNT, got '{raw}'")
    variant_id, qty_raw, amount_raw = parts
    try:
        qty = int(qty_raw)
        amount = Decimal(amount_raw)
    except (ValueError, InvalidOperation) as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity or amount in '{raw}'") from exc
    return variant_id, qty, amount


def _add_user_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--user",
        default=None,
        help="User id recorded as the actor (defaults to [Defaults] DefaultUser).",
    )


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--brand", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-supplier``."""
    name = "add-supplier"
    help_text = "Register a new supplier in the suppliers sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_supplier)


def register_add_variant_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-variant``."""
    name = "add-variant"
    help_text = "Register a sellable size/colour variant of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--barcode", required=True)
        parser.add_argument("--size", required=True)
        parser.add_argument("--color", required=True)
        parser.add_argument("--selling-price", required=True)
        parser.add_argument("--inactive", action="store_true", help="Create the variant as inactive.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_variant)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a supplier delivery."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_line_item,
            required=True,
            metavar="VARIANT:QTY:UNIT_COST",
        )
        parser.add_argument("--invoice-no", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--idempotency-key", default=None)
        _add_user_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a checkout and print its bill number."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_line_item,
            required=True,
            metavar="VARIANT:QTY:UNIT_PRICE",
        )
        parser.add_argument(
            "--payment-mode",
            choices=[member.value for member in PaymentMode],
            required=True,
        )
        parser.add_argument("--discount-percent", default="0")
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--customer-phone", default=None)
        parser.add_argument("--idempotency-key", default=None)
        _add_user_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_void_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``void-sale``."""
    name = "void-sale"
    help_text = "Void a completed sale and restore its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--reason", required=True)
        _add_user_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void_sale)


def register_adjust_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Record a manual stock adjustment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--variant-id", required=True)
        parser.add_argument("--delta", type=int, required=True, help="Signed quantity change.")
        parser.add_argument(
            "--reason",
            choices=[member.value for member in AdjustmentReason],
            required=True,
        )
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--idempotency-key", default=None)
        _add_user_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_delete_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-purchase``."""
    name = "delete-purchase"
    help_text = "Delete a purchase record. Its stock effect is kept."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument(
            "--retain-stock-effect",
            action="store_true",
            help="Confirm that delivered stock stays on hand after the record is removed.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_purchase)


def register_void_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``void-purchase``."""
    name = "void-purchase"
    help_text = "Void a delivery and take its stock back out."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument("--reason", required=True)
        _add_user_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void_purchase)


def register_edit_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-purchase``."""
    name = "edit-purchase"
    help_text = "Change the invoice number or notes of a purchase."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument("--invoice-no", default=None, help="Left unchanged when omitted.")
        parser.add_argument("--notes", dest="notes", default=None, help="Left unchanged when omitted.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_purchase)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels and cost basis."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--include-inactive", action="store_true")
        parser.add_argument("--barcode", default=None, help="Only show the variant with this barcode.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movements``."""
    name = "movements"
    help_text = "Display the movement history of a variant."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--variant-id", required=True)
        parser.add_argument("--start", type=date.fromisoformat, default=None, help="YYYY-MM-DD, inclusive.")
        parser.add_argument("--end", type=date.fromisoformat, default=None, help="YYYY-MM-DD, inclusive.")
        parser.add_argument(
            "--type",
            dest="movement_type",
            choices=[member.value for member in MovementType],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movements_report, mutates=False)


def register_suppliers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``suppliers``."""
    name = "suppliers"
    help_text = "Display per-supplier purchase totals for a variant."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--variant-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_suppliers_report, mutates=False)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Display active variants at or below the low stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "user", None) or context.settings.default_user_id


def translate_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        supplier_id=args.supplier_id,
        created_by=_actor(context, args),
        items=tuple(
            core_logic.PurchaseLine(variant_id=variant_id, qty=qty, unit_cost=unit_cost)
            for variant_id, qty, unit_cost in args.items
        ),
        invoice_no=args.invoice_no,
        notes=args.notes,
        idempotency_key=args.idempotency_key,
    )


def translate_sale(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    settings: data_manager.SettingsRow,
) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command, pricing the bill at the shop tax rate."""
    items = tuple(
        core_logic.SaleLine(variant_id=variant_id, qty=qty, unit_price=unit_price)
        for variant_id, qty, unit_price in args.items
    )
    discount_percent = Decimal(args.discount_percent)
    totals = pricing.compute_sale_totals(items, discount_percent, settings.tax_percent)
    return core_logic.SaleCommand(
        payment_mode=PaymentMode(args.payment_mode),
        subtotal=totals.subtotal,
        discount_amount=totals.discount_amount,
        discount_percent=discount_percent,
        tax_amount=totals.tax_amount,
        tax_percent=settings.tax_percent,
        total=totals.total,
        created_by=_actor(context, args),
        items=items,
        customer_name=args.customer_name,
        customer_phone=args.customer_phone,
        idempotency_key=args.idempotency_key,
    )


def translate_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.StockAdjustmentCommand:
    """Translate CLI args into a stock adjustment command object."""
    return core_logic.StockAdjustmentCommand(
        variant_id=args.variant_id,
        delta_qty=args.delta,
        reason=AdjustmentReason(args.reason),
        created_by=_actor(context, args),
        notes=args.notes,
        idempotency_key=args.idempotency_key,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product = core_logic.create_product(
        context,
        name=args.name,
        brand=args.brand,
        category=args.category,
        description=args.description,
    )
    print(product.product_id)
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-supplier workflow."""
    supplier = core_logic.create_supplier(
        context,
        name=args.name,
        phone=args.phone,
        email=args.email,
        address=args.address,
    )
    print(supplier.supplier_id)
    return 0


def run_add_variant(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-variant workflow."""
    variant = core_logic.create_variant(
        context,
        product_id=args.product_id,
        sku=args.sku,
        barcode=args.barcode,
        size=args.size,
        color=args.color,
        selling_price=Decimal(args.selling_price),
        status=VariantStatus.INACTIVE if args.inactive else VariantStatus.ACTIVE,
    )
    print(variant.variant_id)
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the ledger."""
    purchase = core_logic.create_purchase(context, translate_purchase(context, args))
    print(f"{purchase.purchase_id}\t{purchase.total_cost}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the ledger."""
    command = translate_sale(context, args, core_logic.get_settings(context))
    sale = core_logic.create_sale(context, command)
    print(f"{sale.bill_no}\t{sale.sale_id}\t{sale.total}")
    return 0


def run_void_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the void workflow via the ledger."""
    core_logic.void_sale(context, args.sale_id, _actor(context, args), args.reason)
    return 0


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock adjustment workflow via the ledger."""
    adjustment = core_logic.create_stock_adjustment(context, translate_adjust(context, args))
    print(adjustment.adjustment_id)
    return 0


def run_delete_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase deletion workflow via the ledger."""
    core_logic.delete_purchase(
        context,
        args.purchase_id,
        retain_stock_effect=args.retain_stock_effect,
    )
    return 0


def run_void_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase void workflow via the ledger."""
    core_logic.void_purchase(context, args.purchase_id, _actor(context, args), args.reason)
    return 0


def run_edit_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase metadata update via the ledger."""
    purchase = core_logic.get_purchase(context, args.purchase_id)
    core_logic.update_purchase_metadata(
        context,
        args.purchase_id,
        invoice_no=args.invoice_no if args.invoice_no is not None else purchase.invoice_no,
        notes=args.notes if args.notes is not None else purchase.notes,
    )
    return 0


def _stock_lookup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> List[data_manager.VariantRow]:
    if args.barcode is None:
        return core_logic.list_variants(context, include_inactive=args.include_inactive)
    variant = core_logic.find_variant_by_barcode(context, args.barcode)
    if variant is None:
        log.warning("No variant carries barcode '%s'", args.barcode)
        raise core_logic.NotFoundError(f"Unknown barcode: {args.barcode}")
    return [variant]


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per variant: sku, size, colour, stock, cost and price."""
    for variant in _stock_lookup(context, args):
        print(
            "\t".join(
                (
                    variant.variant_id,
                    variant.sku,
                    variant.size,
                    variant.color,
                    str(variant.stock_qty),
                    str(variant.avg_cost),
                    str(variant.selling_price),
                    str(pricing.stock_value(variant.stock_qty, variant.avg_cost)),
                )
            )
        )
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the movement feed of a variant, newest first, then the net change."""
    movement_type = MovementType(args.movement_type) if args.movement_type else None
    entries = movements.get_stock_movements(
        context,
        args.variant_id,
        start=args.start,
        end=args.end,
        movement_type=movement_type,
    )
    for entry in entries:
        print(
            "\t".join(
                (
                    entry.date,
                    entry.movement_type.value,
                    f"{entry.qty:+d}",
                    entry.reference_no or entry.reference_id,
                    entry.supplier_name or entry.notes or "",
                )
            )
        )
    print(f"net\t{movements.net_movement(entries):+d}")
    return 0


def run_suppliers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the per-supplier purchase summary of a variant."""
    for summary in movements.get_supplier_summary(context, args.variant_id):
        print(
            "\t".join(
                (
                    summary.supplier_name,
                    str(summary.total_qty),
                    str(summary.purchase_count),
                    str(summary.avg_unit_cost),
                    summary.last_purchase_date,
                )
            )
        )
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print active variants whose stock is at or below the threshold."""
    for variant in core_logic.list_low_stock_variants(context):
        print(f"{variant.variant_id}\t{variant.sku}\t{variant.stock_qty}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, data_manager.StorageFailure):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise data_manager.StorageFailure(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
