# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Observer for device client connection status changes"""

from __future__ import annotations  # Needed for annotation bug < 3.10
import asyncio
import logging
from typing import Callable, List, Optional, Set
from .custom_typing import FunctionOrCoroutine
from .models import ConnectionStatus, ConnectionStatusChangeReason
from . import handle_exceptions

logger = logging.getLogger(__name__)


class ConnectionStatusNotifier:
    """Tracks the current connection status and reports every change to subscribers.

    Subscribers may be plain functions or coroutine functions. Failures inside a subscriber
    are logged and never reach the code that reported the change.
    """

    def __init__(self) -> None:
        self._status = ConnectionStatus.DISCONNECTED
        self._reason: Optional[ConnectionStatusChangeReason] = None
        self._callbacks: List[
            FunctionOrCoroutine[[ConnectionStatus, ConnectionStatusChangeReason], None]
        ] = []
        self._pending: Set[asyncio.Future] = set()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def reason(self) -> Optional[ConnectionStatusChangeReason]:
        return self._reason

    def subscribe(
        self, callback: FunctionOrCoroutine[[ConnectionStatus, ConnectionStatusChangeReason], None]
    ) -> Callable[[], None]:
        """Add a callback invoked with (status, reason) upon every status change

        :returns: A function that removes the callback again
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                logger.debug("Connection status callback was already unsubscribed")

        return unsubscribe

    def notify(self, status: ConnectionStatus, reason: ConnectionStatusChangeReason) -> None:
        """Record a new status and report it to all subscribers.

        Reporting the current status again with the same reason does nothing.
        """
        if status == self._status and reason == self._reason:
            return
        logger.debug("Connection status: {} ({})".format(status.value, reason.value))
        self._status = status
        self._reason = reason
        for callback in list(self._callbacks):
            try:
                result = callback(status, reason)
            except Exception as e:
                handle_exceptions.handle_background_exception(e, "connection status callback")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        e = task.exception()
        if e:
            handle_exceptions.handle_background_exception(e, "connection status callback")
