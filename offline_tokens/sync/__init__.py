"""Online submission and offline batch reconciliation."""

from .processor import Submission, TransactionProcessor, parse_submission
from .reconciler import SyncReconciler

__all__ = ["Submission", "SyncReconciler", "TransactionProcessor", "parse_submission"]
