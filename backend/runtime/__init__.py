"""
ScriptWatch Runtime Package.

Script instances, their registry, resource scoping and the execution
engine interface.
Requires Python 3.11+.
"""

from runtime.engine import (
    PythonScriptEngine,
    ScriptContext,
    ScriptEngine,
    ScriptError,
    ScriptLoadError,
)
from runtime.exports import ExportRegistry, ScriptExport
from runtime.registry import ScriptRegistry
from runtime.script import (
    ScopedWatcher,
    Script,
    ScriptState,
    WatchTarget,
    resolve_script_path,
)
from runtime.terminable import CompositeClosingError, CompositeTerminable

__all__ = [
    "CompositeClosingError",
    "CompositeTerminable",
    "ExportRegistry",
    "PythonScriptEngine",
    "ScopedWatcher",
    "Script",
    "ScriptContext",
    "ScriptEngine",
    "ScriptExport",
    "ScriptError",
    "ScriptLoadError",
    "ScriptRegistry",
    "ScriptState",
    "WatchTarget",
    "resolve_script_path",
]
