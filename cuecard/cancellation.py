"""Cooperative cancellation for streaming generation."""

from cuecard.errors import GenerationCancelled


class CancellationToken:
    """Passed into every generation call chain and checked at each yield point."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled()
