"""Cooperative cancellation for download runs.

Cancelling a run stops the dispatcher from handing out new tools; downloads
already in flight run to completion (or time out) so no partial file is left
at a final cache path.  A token created with ``abort_in_flight=True`` also
makes streaming loops abandon their temporary file at the next chunk.
"""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe cancellation flag shared between a caller and the dispatcher.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self, *, abort_in_flight: bool = False) -> None:
        self._event = threading.Event()
        self.abort_in_flight = abort_in_flight

    def cancel(self) -> None:
        """Signal that no further work should be started."""
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def should_abort_transfer(self) -> bool:
        """True when in-flight transfers should also stop at the next chunk."""
        return self.abort_in_flight and self._event.is_set()
