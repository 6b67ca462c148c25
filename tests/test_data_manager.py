"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import os
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from mj_ledger import data_manager
from mj_ledger.constants import Collection


def _variant(variant_id: str = "V1", **overrides) -> data_manager.VariantRow:
    fields = dict(
        variant_id=variant_id,
        product_id="P1",
        sku=f"SKU-{variant_id}",
        barcode=f"BC-{variant_id}",
        size="M",
        color="Red",
        selling_price=Decimal("499.00"),
        avg_cost=Decimal("250.50"),
        stock_qty=7,
        status="ACTIVE",
        created_at="2024-01-01T00:00:00+00:00",
        updated_at="2024-01-01T00:00:00+00:00",
    )
    fields.update(overrides)
    return data_manager.VariantRow(**fields)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    isolated = tmp_path / "isolated"
    isolated.mkdir()
    monkeypatch.chdir(isolated)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Test Textiles"
    assert parser.get("Defaults", "DefaultUser") == "U-ADMIN"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_user_id == "U-ADMIN"
    assert settings.shop_name == "Test Textiles"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    assert isinstance(data_manager.open_workbook(master_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_master_workbook_has_every_collection_sheet(master_workbook_path):
    """The bootstrap workbook should carry one sheet per collection with headers."""

    workbook = data_manager.open_workbook(master_workbook_path)

    for collection, columns in data_manager.COLLECTION_COLUMNS.items():
        header = [cell.value for cell in workbook[collection.value][1]]
        assert header == list(columns)


def test_save_workbook_persists_changes(master_workbook_path):
    """save_workbook should persist appended records to disk."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_record(workbook, Collection.VARIANTS, _variant())
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert data_manager.load_collection(reloaded, Collection.VARIANTS) == [_variant()]


def test_save_workbook_wraps_os_errors(master_workbook_path, monkeypatch):
    """Write failures should surface as StorageFailure."""

    workbook = data_manager.open_workbook(master_workbook_path)

    def _fail(*_args, **_kwargs):
        raise PermissionError("read-only volume")

    monkeypatch.setattr(workbook, "save", _fail)
    with pytest.raises(data_manager.StorageFailure):
        data_manager.save_workbook(workbook, master_workbook_path)


def test_refresh_workbook_returns_new_instance(master_workbook_path):
    original = data_manager.open_workbook(master_workbook_path)
    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original


def test_file_stamp_tracks_modification_time(master_workbook_path, tmp_path):
    """file_stamp should follow the file's mtime and be None for missing files."""

    os.utime(master_workbook_path, ns=(1_000_000_000, 1_000_000_000))
    assert data_manager.file_stamp(master_workbook_path) == 1_000_000_000
    assert data_manager.file_stamp(tmp_path / "missing.xlsx") is None


# ---------------------------------------------------------------------------
# Collection operations
# ---------------------------------------------------------------------------


def test_load_collection_skips_blank_rows(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[Collection.VARIANTS.value]
    sheet.append([None] * 12)
    data_manager.append_record(workbook, Collection.VARIANTS, _variant("V2"))

    rows = data_manager.load_collection(workbook, Collection.VARIANTS)

    assert [row.variant_id for row in rows] == ["V2"]


def test_load_collection_missing_sheet_raises_by_default():
    workbook = openpyxl.Workbook()
    with pytest.raises(KeyError):
        data_manager.load_collection(workbook, Collection.SALES)


def test_load_collection_missing_sheet_is_empty_when_allowed():
    """Display-only readers may treat a missing sheet as an empty collection."""

    workbook = openpyxl.Workbook()
    assert data_manager.load_collection(workbook, Collection.SALES, missing_ok=True) == []


def test_append_record_to_missing_sheet_raises_storage_failure():
    workbook = openpyxl.Workbook()
    with pytest.raises(data_manager.StorageFailure):
        data_manager.append_record(workbook, Collection.VARIANTS, _variant())


def test_save_collection_replaces_rows_and_keeps_position(master_workbook_path):
    """save_collection should rewrite the whole sheet in place."""

    workbook = data_manager.open_workbook(master_workbook_path)
    position = workbook.sheetnames.index(Collection.VARIANTS.value)
    for variant_id in ("V1", "V2", "V3"):
        data_manager.append_record(workbook, Collection.VARIANTS, _variant(variant_id))

    data_manager.save_collection(workbook, Collection.VARIANTS, [_variant("V2", stock_qty=1)])

    assert workbook.sheetnames.index(Collection.VARIANTS.value) == position
    header = [cell.value for cell in workbook[Collection.VARIANTS.value][1]]
    assert header == list(data_manager.COLLECTION_COLUMNS[Collection.VARIANTS])
    rows = data_manager.load_collection(workbook, Collection.VARIANTS)
    assert rows == [_variant("V2", stock_qty=1)]


def test_save_collection_then_append_continues_after_last_row(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.save_collection(workbook, Collection.VARIANTS, [_variant("V1")])
    data_manager.append_record(workbook, Collection.VARIANTS, _variant("V2"))

    rows = data_manager.load_collection(workbook, Collection.VARIANTS)
    assert [row.variant_id for row in rows] == ["V1", "V2"]


# ---------------------------------------------------------------------------
# Settings and deserialization
# ---------------------------------------------------------------------------


def test_load_settings_reads_bootstrap_row(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    settings = data_manager.load_settings(workbook)

    assert settings.invoice_prefix == "MJT"
    assert settings.tax_percent == Decimal("5.00")
    assert settings.low_stock_threshold == 10
    assert settings.last_bill_number == 0


def test_load_settings_falls_back_to_defaults_when_sheet_missing():
    assert data_manager.load_settings(openpyxl.Workbook()) == data_manager.default_settings()


def test_save_settings_round_trips(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    updated = replace(data_manager.load_settings(workbook), last_bill_number=41)
    data_manager.save_settings(workbook, updated)
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert data_manager.load_settings(reloaded).last_bill_number == 41


def test_deserialize_variant_normalises_excel_values():
    """Floats from Excel should become cent-precise Decimals and ints."""

    row = data_manager.deserialize_variant(
        ("V1", "P1", "SKU", 8900000000011, "M", "Red", 499.0, 250.505, 7.0, None, "t0", "t1")
    )

    assert row.barcode == "8900000000011"
    assert row.selling_price == Decimal("499.00")
    assert row.avg_cost == Decimal("250.51")
    assert row.stock_qty == 7
    assert row.status == "ACTIVE"


def test_deserialize_sale_pads_trailing_empty_cells():
    """Rows with trailing blanks should still deserialize into full records."""

    sale = data_manager.deserialize_sale(("S1", "MJT000001", "2024-01-01T10:00:00+00:00"))

    assert sale.sale_id == "S1"
    assert sale.total == Decimal("0.00")
    assert sale.voided_at is None
    assert sale.idempotency_key is None


def test_deserialize_purchase_without_status_is_completed():
    """Workbooks written before purchase voids existed have no status column."""

    purchase = data_manager.deserialize_purchase(
        ("P1", "SUP1", "2024-01-01T10:00:00+00:00", "INV-9", 1200, None, "U1", "t0", None)
    )

    assert purchase.status == "COMPLETED"
    assert (purchase.voided_at, purchase.voided_by, purchase.void_reason) == (None, None, None)


def test_deserialize_user_parses_boolean_text():
    user = data_manager.deserialize_user(("U1", "asha", "Asha", "ADMIN", "TRUE", "t0"))
    assert user.is_active is True
