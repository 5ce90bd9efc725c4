"""Tool-call id and signature reconciliation across provider formats."""

from parley.reconcile.ids import IdReconciler
from parley.reconcile.signatures import SignatureStore

__all__ = ["IdReconciler", "SignatureStore"]
