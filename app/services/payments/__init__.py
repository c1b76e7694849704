from .client import PaymentProviderClient
from .reconciler import PaymentReconciler, ReconciliationResult, STATUS_MAP

__all__ = ["PaymentProviderClient", "PaymentReconciler", "ReconciliationResult", "STATUS_MAP"]
