"""
ScriptWatch Terminables.

Scoped resource registries that close everything a script allocated.
Requires Python 3.11+.
"""

import threading
from collections.abc import Callable, Iterable
from typing import Any, Protocol, TypeVar


class Closeable(Protocol):
    """Anything with a close() method."""

    def close(self) -> Any: ...


T = TypeVar("T")


class CompositeClosingError(Exception):
    """Raised when one or more resources fail to close."""

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = errors
        super().__init__(f"{len(errors)} resource(s) failed to close: {errors!r}")


class _CallbackCloseable:
    """Adapts a plain callable to the Closeable protocol."""

    def __init__(self, callback: Callable[[], Any]) -> None:
        self._callback = callback

    def close(self) -> None:
        self._callback()

    def __repr__(self) -> str:
        return f"<closeable {self._callback!r}>"


class CompositeTerminable:
    """
    A registry of closeable resources released together.

    Resources are closed most-recent first. A failing resource never
    prevents the others from closing; every failure is collected and
    raised at the end as a CompositeClosingError.

    Usage:
        resources = CompositeTerminable()
        timer = resources.bind(make_timer())
        resources.defer(lambda: print("bye"))
        resources.close()
    """

    def __init__(self) -> None:
        self._closeables: list[Closeable] = []
        self._closed = False
        self._lock = threading.Lock()

    def with_(self, closeable: Closeable) -> "CompositeTerminable":
        """
        Register a resource and return self for chaining.

        Once the registry has closed, a late resource is closed on the spot.

        Raises:
            CompositeClosingError: if a late resource fails to close
        """
        if closeable is None:
            raise TypeError("closeable must not be None")
        with self._lock:
            if not self._closed:
                self._closeables.append(closeable)
                return self

        try:
            closeable.close()
        except Exception as e:
            raise CompositeClosingError([e]) from e
        return self

    def with_all(self, closeables: Iterable[Closeable | None]) -> "CompositeTerminable":
        """Register several resources, skipping None values."""
        for closeable in closeables:
            if closeable is not None:
                self.with_(closeable)
        return self

    def bind(self, closeable: T) -> T:
        """Register a resource and return it unchanged."""
        self.with_(closeable)  # type: ignore[arg-type]
        return closeable

    def defer(self, callback: Callable[[], Any]) -> None:
        """Register a callable to run when the registry closes."""
        self.with_(_CallbackCloseable(callback))

    def close(self) -> None:
        """
        Close every registered resource.

        Raises:
            CompositeClosingError: if any resource raised while closing
        """
        with self._lock:
            closeables = list(reversed(self._closeables))
            self._closeables.clear()
            self._closed = True

        errors: list[BaseException] = []
        for closeable in closeables:
            try:
                closeable.close()
            except Exception as e:
                errors.append(e)

        if errors:
            raise CompositeClosingError(errors)

    def close_silently(self) -> CompositeClosingError | None:
        """Close every resource and return the failure instead of raising it."""
        try:
            self.close()
        except CompositeClosingError as e:
            return e
        return None

    def cleanup(self) -> None:
        """Forget resources that report themselves closed already."""
        with self._lock:
            self._closeables = [
                c for c in self._closeables if not getattr(c, "closed", False)
            ]

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._closeables)
