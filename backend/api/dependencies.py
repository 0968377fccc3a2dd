"""
ScriptWatch API Dependencies.

Application state shared by the lifespan and the route handlers.
Requires Python 3.11+.
"""

from dataclasses import dataclass

from fastapi import HTTPException

from loader.reconciler import Reconciler
from runtime.exports import ExportRegistry


@dataclass
class AppState:
    """What the lifespan attaches for the routes to use."""

    reconciler: Reconciler | None = None

    @property
    def attached(self) -> bool:
        return self.reconciler is not None


state = AppState()


def set_reconciler(reconciler: Reconciler | None) -> None:
    """Attach a reconciler, or detach with None."""
    state.reconciler = reconciler


def get_reconciler() -> Reconciler | None:
    return state.reconciler


def require_reconciler() -> Reconciler:
    """
    Dependency that requires a reconciler.

    Raises HTTPException 503 while the loader is detached.
    """
    if state.reconciler is None:
        raise HTTPException(status_code=503, detail="Script loader unavailable")
    return state.reconciler


def require_exports() -> ExportRegistry:
    """Dependency for the attached reconciler's export registry."""
    return require_reconciler().exports
