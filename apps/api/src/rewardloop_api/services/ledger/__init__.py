from .ledger_service import LedgerPage, LedgerReconciliation, PointsLedgerService

__all__ = ["LedgerPage", "LedgerReconciliation", "PointsLedgerService"]
