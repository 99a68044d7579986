from __future__ import annotations


class CancelledError(RuntimeError):
    """Raised by a dispatcher that observed a cancellation request mid-scan."""


class CancellationToken:
    """Cooperative cancel flag shared between the registry and an in-flight scan.

    The registry only flips the flag; stopping a scanner process is up to the
    dispatcher, which polls `cancelled` or calls `raise_if_cancelled()` between steps.
    """

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def request_cancel(self, reason: str = "cancelled") -> None:
        if self._reason is None:
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise CancelledError(self._reason)
