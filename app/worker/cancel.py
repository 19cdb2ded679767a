# worker/cancel.py
from __future__ import annotations
from typing import Optional

from core.errors import Cancelled

class CancelToken:
    """Cooperative cancellation flag passed through every pipeline stage."""

    def __init__(self) -> None:
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Cancelled") -> None:
        if self._reason is None:
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise Cancelled(self._reason)
