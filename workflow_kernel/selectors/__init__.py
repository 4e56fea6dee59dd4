"""Selectors for the workflow kernel (read side)."""

from workflow_kernel.selectors.approval_selector import ApprovalSelector
from workflow_kernel.selectors.base import BaseSelector
from workflow_kernel.selectors.trigger_log_selector import TriggerLogSelector

__all__ = [
    "ApprovalSelector",
    "BaseSelector",
    "TriggerLogSelector",
]
