"""
ScriptWatch Script Routes.

Operator controls over the script loader.
Requires Python 3.11+.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import require_exports, require_reconciler
from loader.reconciler import Reconciler
from runtime.exports import ExportRegistry
from utils.logger import get_logger

router = APIRouter()
logger = get_logger("api.scripts")


class ScriptInfo(BaseModel):
    """A loaded script."""

    name: str
    path: str
    state: str
    dependencies: list[str]
    last_dependency_change: float
    error: str | None = None
    watching: list[str] = Field(default_factory=list)


class ScriptListResponse(BaseModel):
    """Response model for the script listing."""

    scripts: list[ScriptInfo]
    total: int


class WatchRequest(BaseModel):
    """Paths to watch or unwatch, relative to the script root."""

    paths: list[str] = Field(..., min_length=1)


class WatchedResponse(BaseModel):
    """Currently watched paths."""

    watched: list[str]


class PlanResponse(BaseModel):
    """What a reconciliation cycle decided and applied."""

    to_load: list[str]
    to_unload: list[str]
    to_reload: list[str]
    reload_queue: list[str]
    loaded: list[str]
    reloaded: list[str]
    unloaded: list[str]


class PreloadResponse(BaseModel):
    """Result of a preload run."""

    cycles: int
    scripts: int


class ExportInfo(BaseModel):
    """A shared export slot. Values are not serialized."""

    id: str
    has_value: bool
    type: str | None = None


class ExportListResponse(BaseModel):
    """Response model for the export listing."""

    exports: list[ExportInfo]
    total: int


def _watched(reconciler: Reconciler) -> WatchedResponse:
    return WatchedResponse(watched=[p.as_posix() for p in reconciler.watched()])


# Handlers are async so that script side effects triggered from here
# stay on the event loop thread, like those of the poll loop.


@router.get("", response_model=ScriptListResponse)
async def list_scripts(
    reconciler: Reconciler = Depends(require_reconciler),
) -> ScriptListResponse:
    """List every loaded script."""
    scripts = [ScriptInfo(**script.describe()) for script in reconciler.scripts()]
    return ScriptListResponse(scripts=scripts, total=len(scripts))


@router.get("/watched", response_model=WatchedResponse)
async def list_watched(
    reconciler: Reconciler = Depends(require_reconciler),
) -> WatchedResponse:
    """List watched paths."""
    return _watched(reconciler)


@router.post("/watch", response_model=WatchedResponse)
async def watch_paths(
    request: WatchRequest,
    reconciler: Reconciler = Depends(require_reconciler),
) -> WatchedResponse:
    """Watch paths; they load on the next cycle if the files exist."""
    logger.info("watch_requested", paths=request.paths)
    reconciler.watch(request.paths)
    return _watched(reconciler)


@router.post("/unwatch", response_model=WatchedResponse)
async def unwatch_paths(
    request: WatchRequest,
    reconciler: Reconciler = Depends(require_reconciler),
) -> WatchedResponse:
    """Stop watching paths; loaded scripts unload on the next cycle."""
    logger.info("unwatch_requested", paths=request.paths)
    reconciler.unwatch(request.paths)
    return _watched(reconciler)


@router.post("/reconcile", response_model=PlanResponse)
async def reconcile_now(
    reconciler: Reconciler = Depends(require_reconciler),
) -> PlanResponse:
    """Run one reconciliation cycle immediately."""
    plan = reconciler.reconcile()
    return PlanResponse(**plan.summary())


@router.post("/preload", response_model=PreloadResponse)
async def preload(
    reconciler: Reconciler = Depends(require_reconciler),
) -> PreloadResponse:
    """Reconcile until no new paths are watched."""
    cycles = reconciler.preload()
    return PreloadResponse(cycles=cycles, scripts=len(reconciler.scripts()))


@router.get("/exports", response_model=ExportListResponse)
async def list_exports(
    exports: ExportRegistry = Depends(require_exports),
) -> ExportListResponse:
    """List the shared export slots scripts have created."""
    items = [
        ExportInfo(
            id=export.id,
            has_value=export.has_value,
            type=type(export.value).__name__ if export.has_value else None,
        )
        for export in sorted(exports, key=lambda e: e.id)
    ]
    return ExportListResponse(exports=items, total=len(items))
