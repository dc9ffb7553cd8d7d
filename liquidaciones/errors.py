"""Exception hierarchy for the settlement reconciliation package."""

from typing import Any, Optional


class LiquidacionesError(Exception):
    """Base error for settlement parsing and reconciliation."""


class PdfReadError(LiquidacionesError):
    """The PDF bytes could not be opened or carry no text layer."""


class OrderResolverError(LiquidacionesError):
    """Failure talking to the order lookup service. Never escapes ``resolve``."""

    def __init__(self, message: str, status_code: int = 0, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class PayoutNotAllowedError(LiquidacionesError):
    """Payout requested while reconciliations still need review."""


class SettlementNotFoundError(LiquidacionesError):
    """No settlement stored under the requested id."""

    def __init__(self, settlement_id: str, message: Optional[str] = None):
        super().__init__(message or f"Settlement not found: {settlement_id}")
        self.settlement_id = settlement_id
