"""Enumerations shared across the MJ stock ledger modules.

Centralises domain constants so that the data access layer (DAL), the ledger
rules, and the CLI agree on the exact strings written to the workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Width of the numeric part of a bill number, e.g. ``MJT000042``.
BILL_NUMBER_WIDTH = 6


class PaymentMode(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"
    CREDIT = "CREDIT"


class SaleStatus(str, Enum):
    """Lifecycle states of a sale. ``VOIDED`` is terminal."""

    COMPLETED = "COMPLETED"
    VOIDED = "VOIDED"


class PurchaseStatus(str, Enum):
    """Lifecycle states of a supplier delivery. ``VOIDED`` is terminal."""

    COMPLETED = "COMPLETED"
    VOIDED = "VOIDED"


class VariantStatus(str, Enum):
    """Whether a variant is offered for sale."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class UserRole(str, Enum):
    """Roles recorded against shop users."""

    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"


class AdjustmentReason(str, Enum):
    """Reason codes accepted for manual stock adjustments."""

    OPENING_STOCK = "OPENING_STOCK"
    DAMAGE = "DAMAGE"
    THEFT = "THEFT"
    CORRECTION = "CORRECTION"
    RETURN = "RETURN"
    OTHER = "OTHER"


class MovementType(str, Enum):
    """Kinds of entries produced by the movement reconstructor."""

    PURCHASE = "PURCHASE"
    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    VOID_RESTORE = "VOID_RESTORE"


class Collection(str, Enum):
    """Enumerate the workbook sheets (collections) managed by the DAL."""

    USERS = "users"
    PRODUCTS = "products"
    VARIANTS = "variants"
    SUPPLIERS = "suppliers"
    PURCHASES = "purchases"
    PURCHASE_ITEMS = "purchase_items"
    SALES = "sales"
    SALE_ITEMS = "sale_items"
    STOCK_ADJUSTMENTS = "stock_adjustments"
    SETTINGS = "settings"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "BILL_NUMBER_WIDTH",
    "PaymentMode",
    "SaleStatus",
    "PurchaseStatus",
    "VariantStatus",
    "UserRole",
    "AdjustmentReason",
    "MovementType",
    "Collection",
]
