"""
ScriptWatch Script Exports.

Named values shared between scripts that outlive any single instance,
so state survives a reload.
Requires Python 3.11+.
"""

import threading
from collections.abc import Callable, Iterator
from typing import Any


class ScriptExport:
    """
    A named slot in the export registry.

    A slot holding None counts as empty.
    """

    def __init__(self, export_id: str) -> None:
        self.id = export_id
        self.value: Any = None
        self._lock = threading.Lock()

    @property
    def has_value(self) -> bool:
        return self.value is not None

    def get(self, default: Any = None, *, factory: Callable[[], Any] | None = None) -> Any:
        """
        Get the value, filling an empty slot first.

        Args:
            default: Value stored if the slot is empty
            factory: Called to produce the stored value if the slot is empty

        Returns:
            The value now held, which may still be None
        """
        self.set_if_absent(default, factory=factory)
        return self.value

    def set(self, value: Any) -> "ScriptExport":
        self.value = value
        return self

    def set_if_absent(
        self, value: Any = None, *, factory: Callable[[], Any] | None = None
    ) -> "ScriptExport":
        with self._lock:
            if self.value is None:
                self.value = factory() if factory is not None else value
        return self

    def __repr__(self) -> str:
        return f"ScriptExport(id={self.id!r}, value={self.value!r})"


class ExportRegistry:
    """
    Case-insensitive registry of export slots.

    One registry is shared by every script of a reconciler and is never
    cleared by a reload, so a script can keep a connection or a counter
    across its own replacements:

        pool = exports.get("db_pool", factory=make_pool)
    """

    def __init__(self) -> None:
        self._handles: dict[str, ScriptExport] = {}
        self._lock = threading.Lock()

    def handle(
        self, key: str, default: Any = None, *, factory: Callable[[], Any] | None = None
    ) -> ScriptExport:
        """Get the slot for a key, creating it and filling it if empty."""
        normalized = key.lower()
        with self._lock:
            handle = self._handles.get(normalized)
            if handle is None:
                handle = self._handles[normalized] = ScriptExport(normalized)
        if default is not None or factory is not None:
            handle.set_if_absent(default, factory=factory)
        return handle

    def get(self, key: str, default: Any = None, *, factory: Callable[[], Any] | None = None) -> Any:
        return self.handle(key).get(default, factory=factory)

    def set(self, key: str, value: Any) -> ScriptExport:
        return self.handle(key).set(value)

    def has(self, key: str) -> bool:
        """Whether a key holds a value."""
        with self._lock:
            handle = self._handles.get(key.lower())
        return handle is not None and handle.has_value

    def remove(self, key: str) -> None:
        with self._lock:
            self._handles.pop(key.lower(), None)

    @property
    def exports(self) -> list[ScriptExport]:
        with self._lock:
            return list(self._handles.values())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[ScriptExport]:
        return iter(self.exports)
