"""Shared pytest fixtures and utilities for MJ stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from mj_ledger import cli, constants, core_logic, data_manager, pricing  # noqa: E402
from mj_ledger.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER_ID = "U-ADMIN"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultUser = {default_user_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_user_id: str
    schema_version: str
    shop_name: str


@dataclass(frozen=True)
class Catalogue:
    """Ids of a minimal catalogue seeded into a fresh workbook."""

    product_id: str
    supplier_id: str
    variant_id: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        default_user_id: str = DEFAULT_USER_ID,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, default_user_id=default_user_id, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Textiles",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_user_id: str = DEFAULT_USER_ID,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=f"bundle_{bundle_id}",
            default_user_id=default_user_id,
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                default_user_id=default_user_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_user_id=default_user_id,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def catalogue(runtime_context: core_logic.RuntimeContext) -> Catalogue:
    """Seed one product, one supplier and one empty variant."""

    product = core_logic.create_product(
        runtime_context,
        name="Cotton Shirt",
        brand="MJ",
        category="Shirts",
    )
    supplier = core_logic.create_supplier(runtime_context, name="Surat Mills")
    variant = core_logic.create_variant(
        runtime_context,
        product_id=product.product_id,
        sku="SHIRT-M-BLU",
        barcode="8900000000011",
        size="M",
        color="Blue",
        selling_price=Decimal("499.00"),
    )
    return Catalogue(
        product_id=product.product_id,
        supplier_id=supplier.supplier_id,
        variant_id=variant.variant_id,
    )


@pytest.fixture
def purchase_factory(
    runtime_context: core_logic.RuntimeContext,
    catalogue: Catalogue,
) -> Callable[..., data_manager.PurchaseRow]:
    """Record purchases of the seeded variant with compact arguments."""

    def _purchase(
        qty: int,
        unit_cost: str,
        *,
        variant_id: str | None = None,
        supplier_id: str | None = None,
        **overrides,
    ) -> data_manager.PurchaseRow:
        command = core_logic.PurchaseCommand(
            supplier_id=supplier_id or catalogue.supplier_id,
            created_by=DEFAULT_USER_ID,
            items=(
                core_logic.PurchaseLine(
                    variant_id=variant_id or catalogue.variant_id,
                    qty=qty,
                    unit_cost=Decimal(unit_cost),
                ),
            ),
            **overrides,
        )
        return core_logic.create_purchase(runtime_context, command)

    return _purchase


@pytest.fixture
def sale_factory(
    runtime_context: core_logic.RuntimeContext,
    catalogue: Catalogue,
) -> Callable[..., data_manager.SaleRow]:
    """Record a single-line sale priced at the shop's tax rate."""

    def _sale(qty: int, unit_price: str = "499.00", *, variant_id: str | None = None, **overrides) -> data_manager.SaleRow:
        return core_logic.create_sale(
            runtime_context,
            build_sale_command(
                runtime_context,
                [(variant_id or catalogue.variant_id, qty, unit_price)],
                **overrides,
            ),
        )

    return _sale


def build_sale_command(
    context: core_logic.RuntimeContext,
    lines,
    *,
    discount_percent: str = "0",
    payment_mode: constants.PaymentMode = constants.PaymentMode.CASH,
    **overrides,
) -> core_logic.SaleCommand:
    """Build a SaleCommand whose totals agree with its lines."""

    items = tuple(
        core_logic.SaleLine(variant_id=variant_id, qty=qty, unit_price=Decimal(price))
        for variant_id, qty, price in lines
    )
    tax_percent = core_logic.get_settings(context).tax_percent
    totals = pricing.compute_sale_totals(items, Decimal(discount_percent), tax_percent)
    fields = dict(
        payment_mode=payment_mode,
        subtotal=totals.subtotal,
        discount_amount=totals.discount_amount,
        discount_percent=Decimal(discount_percent),
        tax_amount=totals.tax_amount,
        tax_percent=tax_percent,
        total=totals.total,
        created_by=DEFAULT_USER_ID,
        items=items,
    )
    fields.update(overrides)
    return core_logic.SaleCommand(**fields)


@pytest.fixture
def sale_command_builder() -> Callable[..., core_logic.SaleCommand]:
    """Expose :func:`build_sale_command` to tests."""

    return build_sale_command


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="mj-ledger", description="MJ ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Mocked context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        shop_name="Test Textiles",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_user_id=DEFAULT_USER_ID,
    )


@pytest.fixture
def mock_context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context around a mock workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
