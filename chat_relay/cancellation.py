"""Cooperative cancellation for in-flight completions."""

from __future__ import annotations

import logging
from typing import Optional

from .exceptions import ClientAborted

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag threaded through every suspending call of a completion.

    The token is checked before and after each awaited store or upstream
    operation; once cancelled, the next check raises :class:`ClientAborted`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "client cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.debug("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ClientAborted(self._reason or "client cancelled")
