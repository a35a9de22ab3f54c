# Overview: Domain exceptions raised by the stock ledger services.

from __future__ import annotations


class InventoryError(ValueError):
    """Base class for stock ledger business rule failures."""


class InsufficientStock(InventoryError):
    """Applying a movement would drive a (store, product) quantity below zero."""

    def __init__(self, *, store_id: int, product_id: int, available, requested):
        self.store_id = store_id
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id} in store {store_id}: "
            f"available {available}, requested {requested}"
        )


class InsufficientStockToRevert(InventoryError):
    """Reverting a document would need more units than are on hand."""

    def __init__(self, *, store_id: int, product_id: int, available, requested):
        self.store_id = store_id
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Cannot revert: product {product_id} in store {store_id} has {available} "
            f"on hand, {requested} required"
        )


class NegativeValuationOnRevert(InventoryError):
    """Reverting a document would remove more value than the stock carries."""

    def __init__(self, *, store_id: int, product_id: int, available_value, required_value):
        self.store_id = store_id
        self.product_id = product_id
        self.available_value = available_value
        self.required_value = required_value
        super().__init__(
            f"Cannot revert: product {product_id} in store {store_id} is valued at "
            f"{available_value}, revert removes {required_value}"
        )


class ConcurrencyConflict(InventoryError):
    """Serializable transaction aborted or optimistic version check failed.

    Callers decide whether to retry; the ledger never retries on its own.
    """


class ReprocessingNonConvergence(InventoryError):
    """Reprocessing still produced repairs after the configured number of passes."""

    def __init__(self, *, store_id: int, product_id: int, passes: int, repairs: int):
        self.store_id = store_id
        self.product_id = product_id
        self.passes = passes
        self.repairs = repairs
        super().__init__(
            f"Reprocessing did not converge for product {product_id} in store {store_id} "
            f"after {passes} passes ({repairs} repairs written)"
        )


class DocumentStatusError(InventoryError):
    """Illegal status transition or unknown causing document."""


class LedgerImmutabilityError(InventoryError):
    """Attempt to update or delete an appended ledger entry."""


class DocumentValidationError(InventoryError):
    """Malformed causing document (missing store, bad line quantities or prices)."""
