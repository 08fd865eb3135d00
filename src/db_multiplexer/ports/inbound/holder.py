"""Holder port - the connection granted exclusive access to an instance.

The core treats holders as opaque handles compared by identity. A holder
that also implements ``TerminationSource`` is released automatically when
its connection ends: both the graceful-close and the error notification are
bound, and whichever fires first releases the instance.
"""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable


@runtime_checkable
class TerminationSource(Protocol):
    """A bidirectional stream handle with terminal notifications.

    Each notification fires at most once per handle. Both may fire for the
    same handle (an error followed by the close of the socket).
    """

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a callback for graceful close."""
        ...

    def on_error(self, callback: Callable[[BaseException], None]) -> None:
        """Register a callback for abnormal termination."""
        ...
