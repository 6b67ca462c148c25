"""Integration tests describing the end-to-end stock ledger workflows.

These scenarios drive the CLI against a real workbook on disk and then reopen
it through the ledger API, so every write goes through a full load, mutate,
persist cycle the way it does at the shop counter.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from mj_ledger import cli, core_logic, data_manager, movements
from mj_ledger.constants import AdjustmentReason, MovementType, SaleStatus


def _run(capsys: pytest.CaptureFixture[str], config_path, *argv: str) -> tuple[int, list[str]]:
    """Invoke the CLI and return its exit code and the printed lines."""

    exit_code = cli.main(["--config", str(config_path), *argv])
    output = capsys.readouterr().out
    return exit_code, [line for line in output.splitlines() if line]


def _seed_catalogue(capsys, config_path, *, inactive: bool = False) -> tuple[str, str]:
    code, [product_id] = _run(
        capsys, config_path, "add-product", "--name", "Linen Kurta", "--brand", "MJ", "--category", "Kurtas"
    )
    assert code == 0
    code, [supplier_id] = _run(capsys, config_path, "add-supplier", "--name", "Jaipur Weaves")
    assert code == 0
    variant_args = [
        "add-variant",
        "--product-id",
        product_id,
        "--sku",
        "KURTA-L-WHT",
        "--barcode",
        "8900000000042",
        "--size",
        "L",
        "--color",
        "White",
        "--selling-price",
        "899",
    ]
    if inactive:
        variant_args.append("--inactive")
    code, [variant_id] = _run(capsys, config_path, *variant_args)
    assert code == 0
    return supplier_id, variant_id


def test_purchase_sale_void_flow_through_cli(config_factory, capsys):
    """Receive stock, sell part of it, void the sale, and read it back."""

    bundle = config_factory()
    supplier_id, variant_id = _seed_catalogue(capsys, bundle.config_path)

    code, [purchase_line] = _run(
        capsys,
        bundle.config_path,
        "purchase",
        "--supplier-id",
        supplier_id,
        "--item",
        f"{variant_id}:10:400",
        "--invoice-no",
        "JW-118",
    )
    assert code == 0
    assert purchase_line.split("\t")[1] == "4000.00"

    code, [sale_line] = _run(
        capsys,
        bundle.config_path,
        "sale",
        "--item",
        f"{variant_id}:2:899",
        "--payment-mode",
        "UPI",
        "--discount-percent",
        "10",
    )
    assert code == 0
    bill_no, sale_id, total = sale_line.split("\t")
    assert bill_no == "MJT000001"
    # 1798.00 less 10% is 1618.20, plus 5% tax 80.91
    assert total == "1699.11"

    code, _ = _run(capsys, bundle.config_path, "void-sale", "--sale-id", sale_id, "--reason", "Customer changed mind")
    assert code == 0

    code, lines = _run(capsys, bundle.config_path, "movements", "--variant-id", variant_id)
    assert code == 0
    # a voided sale shows up only as its restore entry
    assert [line.split("\t")[1] for line in lines[:-1]] == ["VOID_RESTORE", "PURCHASE"]
    assert lines[-1] == "net\t+12"

    context = core_logic.load_runtime_context(bundle.config_path)
    variant = core_logic.get_variant(context, variant_id)
    assert variant.stock_qty == 10
    assert variant.avg_cost == Decimal("400.00")
    sale = core_logic.get_sale(context, sale_id)
    assert sale.status == SaleStatus.VOIDED.value
    assert sale.void_reason == "Customer changed mind"
    assert core_logic.get_settings(context).last_bill_number == 1


def test_failed_cli_sale_leaves_workbook_untouched(config_factory, capsys):
    """An oversell exits with 2 and neither stock nor the bill counter move."""

    bundle = config_factory()
    supplier_id, variant_id = _seed_catalogue(capsys, bundle.config_path)
    _run(capsys, bundle.config_path, "purchase", "--supplier-id", supplier_id, "--item", f"{variant_id}:1:400")
    before = data_manager.file_stamp(bundle.workbook_path)

    code, lines = _run(
        capsys, bundle.config_path, "sale", "--item", f"{variant_id}:2:899", "--payment-mode", "CASH"
    )

    assert code == 2
    assert lines == []
    assert data_manager.file_stamp(bundle.workbook_path) == before
    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_variant(context, variant_id).stock_qty == 1
    assert core_logic.get_settings(context).last_bill_number == 0


def test_inactive_variant_cannot_be_sold(config_factory, capsys):
    bundle = config_factory()
    supplier_id, variant_id = _seed_catalogue(capsys, bundle.config_path, inactive=True)
    _run(capsys, bundle.config_path, "purchase", "--supplier-id", supplier_id, "--item", f"{variant_id}:5:400")

    code, _ = _run(capsys, bundle.config_path, "sale", "--item", f"{variant_id}:1:899", "--payment-mode", "CASH")

    assert code == 2
    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_variant(context, variant_id).stock_qty == 5
    assert core_logic.list_sales(context) == []


def test_delete_purchase_requires_explicit_confirmation(config_factory, capsys):
    """Deleting a purchase keeps its stock, and the CLI demands the flag."""

    bundle = config_factory()
    supplier_id, variant_id = _seed_catalogue(capsys, bundle.config_path)
    _, [purchase_line] = _run(
        capsys, bundle.config_path, "purchase", "--supplier-id", supplier_id, "--item", f"{variant_id}:6:300"
    )
    purchase_id = purchase_line.split("\t")[0]

    code, _ = _run(capsys, bundle.config_path, "delete-purchase", "--purchase-id", purchase_id)
    assert code == 2

    code, _ = _run(
        capsys, bundle.config_path, "delete-purchase", "--purchase-id", purchase_id, "--retain-stock-effect"
    )
    assert code == 0

    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.list_purchases(context) == []
    assert core_logic.list_purchase_items(context) == []
    assert core_logic.get_variant(context, variant_id).stock_qty == 6


def test_edit_then_void_purchase_through_cli(config_factory, capsys):
    """Metadata edits are allowed until the delivery is voided."""

    bundle = config_factory()
    supplier_id, variant_id = _seed_catalogue(capsys, bundle.config_path)
    _, [purchase_line] = _run(
        capsys,
        bundle.config_path,
        "purchase",
        "--supplier-id",
        supplier_id,
        "--item",
        f"{variant_id}:4:300",
        "--invoice-no",
        "JW-7",
    )
    purchase_id = purchase_line.split("\t")[0]

    code, _ = _run(capsys, bundle.config_path, "edit-purchase", "--purchase-id", purchase_id, "--invoice-no", "JW-7A")
    assert code == 0
    code, _ = _run(capsys, bundle.config_path, "void-purchase", "--purchase-id", purchase_id, "--reason", "Short shipped")
    assert code == 0
    code, _ = _run(capsys, bundle.config_path, "void-purchase", "--purchase-id", purchase_id, "--reason", "Again")
    assert code == 2
    code, _ = _run(capsys, bundle.config_path, "edit-purchase", "--purchase-id", purchase_id, "--notes", "Late")
    assert code == 2

    context = core_logic.load_runtime_context(bundle.config_path)
    purchase = core_logic.get_purchase(context, purchase_id)
    assert (purchase.invoice_no, purchase.notes) == ("JW-7A", None)
    assert purchase.void_reason == "Short shipped"
    assert core_logic.get_variant(context, variant_id).stock_qty == 0
    feed = movements.get_stock_movements(context, variant_id)
    assert movements.net_movement(feed) == 0


def test_stock_lookup_by_barcode(config_factory, capsys):
    bundle = config_factory()
    supplier_id, variant_id = _seed_catalogue(capsys, bundle.config_path)
    _run(capsys, bundle.config_path, "purchase", "--supplier-id", supplier_id, "--item", f"{variant_id}:3:400")

    code, [line] = _run(capsys, bundle.config_path, "stock", "--barcode", "8900000000042")
    assert code == 0
    assert line.split("\t")[:2] == [variant_id, "KURTA-L-WHT"]
    assert line.split("\t")[4] == "3"

    code, lines = _run(capsys, bundle.config_path, "stock", "--barcode", "8900000000999")
    assert code == 2
    assert lines == []


def test_read_commands_do_not_rewrite_the_workbook(config_factory, capsys):
    bundle = config_factory()
    supplier_id, variant_id = _seed_catalogue(capsys, bundle.config_path)
    _run(capsys, bundle.config_path, "purchase", "--supplier-id", supplier_id, "--item", f"{variant_id}:3:250")
    before = data_manager.file_stamp(bundle.workbook_path)

    code, stock_lines = _run(capsys, bundle.config_path, "stock")
    assert code == 0
    assert stock_lines[0].split("\t")[4:] == ["3", "250.00", "899.00", "750.00"]

    code, supplier_lines = _run(capsys, bundle.config_path, "suppliers", "--variant-id", variant_id)
    assert code == 0
    assert supplier_lines[0].split("\t")[:4] == ["Jaipur Weaves", "3", "1", "250.00"]

    code, low_lines = _run(capsys, bundle.config_path, "low-stock")
    assert code == 0
    assert low_lines == [f"{variant_id}\tKURTA-L-WHT\t3"]

    assert data_manager.file_stamp(bundle.workbook_path) == before


def test_adjustment_flow_with_persist_and_refresh(config_file, runtime_context, catalogue, purchase_factory):
    """Writes survive a persist and reload, unsaved ones are dropped by refresh."""

    purchase_factory(12, "150")
    core_logic.persist_context(runtime_context)

    context = core_logic.refresh_context(runtime_context)
    core_logic.create_stock_adjustment(
        context,
        core_logic.StockAdjustmentCommand(
            variant_id=catalogue.variant_id,
            delta_qty=-2,
            reason=AdjustmentReason.THEFT,
            created_by="U-ADMIN",
        ),
    )
    assert core_logic.get_variant(context, catalogue.variant_id).stock_qty == 10

    discarded = core_logic.refresh_context(context)
    assert core_logic.get_variant(discarded, catalogue.variant_id).stock_qty == 12
    assert movements.net_movement(movements.get_stock_movements(discarded, catalogue.variant_id)) == 12

    core_logic.persist_context(context)
    reloaded = core_logic.load_runtime_context(config_file)
    feed = movements.get_stock_movements(reloaded, catalogue.variant_id)
    assert [entry.movement_type for entry in feed] == [MovementType.ADJUSTMENT, MovementType.PURCHASE]
    assert core_logic.get_variant(reloaded, catalogue.variant_id).stock_qty == 10
