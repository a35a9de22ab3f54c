# Overview: Model package exports for ORM entities.

from .catalog import Store, Product
from .stock import Stock, LedgerEntry, ReprocessingRun, ReprocessingRunItem
from .documents import (
    PurchaseDocument, PurchaseLine,
    SaleDocument, SaleLine,
    ReturnDocument, ReturnLine,
    AdjustmentDocument, AdjustmentLine,
    TransferDocument, TransferLine,
    DOCUMENT_MODELS,
)

__all__ = [
    'Store', 'Product',
    'Stock', 'LedgerEntry', 'ReprocessingRun', 'ReprocessingRunItem',
    'PurchaseDocument', 'PurchaseLine', 'SaleDocument', 'SaleLine',
    'ReturnDocument', 'ReturnLine', 'AdjustmentDocument', 'AdjustmentLine',
    'TransferDocument', 'TransferLine',
    'DOCUMENT_MODELS',
]
