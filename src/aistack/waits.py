"""Cancellable pauses used by settle delays and polling loops."""

from __future__ import annotations

import asyncio
from typing import Optional

from .errors import OperationCancelledError


def raise_if_cancelled(cancel_event: Optional[asyncio.Event], what: str = "operation") -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(f"{what} cancelled")


async def pause(seconds: float, cancel_event: Optional[asyncio.Event] = None, what: str = "wait") -> None:
    """
    Sleep for ``seconds`` unless ``cancel_event`` is set first.

    Raises:
        OperationCancelledError: If the event is set before or during the pause
    """
    raise_if_cancelled(cancel_event, what)
    if seconds <= 0:
        await asyncio.sleep(0)
        return
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise OperationCancelledError(f"{what} cancelled")
