"""
ScriptWatch File Watcher Package.

Directory monitoring for the script reconciliation loop.
Requires Python 3.11+.
"""

from watcher.debouncer import ChangeKind, Debouncer
from watcher.file_watcher import FileWatch, ScriptFileHandler, WatchBackend

__all__ = ["ChangeKind", "Debouncer", "FileWatch", "ScriptFileHandler", "WatchBackend"]
