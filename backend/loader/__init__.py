"""
ScriptWatch Loader Package.

The watch, diff, expand and apply loop that keeps scripts loaded.
Requires Python 3.11+.
"""

from loader.dependencies import dependents_of, expand_reloads
from loader.plan import ReconciliationPlan
from loader.reconciler import Executor, Reconciler, inline_executor, loop_executor

__all__ = [
    "Executor",
    "ReconciliationPlan",
    "Reconciler",
    "dependents_of",
    "expand_reloads",
    "inline_executor",
    "loop_executor",
]
