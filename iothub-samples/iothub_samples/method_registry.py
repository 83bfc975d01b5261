# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the registry that maps method names to handlers and dispatches
incoming method requests to them"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union
from .exceptions import HandlerError
from .models import MethodRequest, MethodResponse
from . import constant

logger = logging.getLogger(__name__)

_C = TypeVar("_C")

MethodHandler = Callable[
    [MethodRequest, Optional[_C]], Union[MethodResponse, Awaitable[MethodResponse]]
]


class MethodHandlerRegistry:
    """Holds at most one (handler, context) pair per method name.

    Handlers are invoked with the request and the context given at registration, and may be
    plain functions or coroutine functions. A handler failure is contained: it is logged and
    answered with a server error status instead of propagating.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, Tuple[MethodHandler, Any]] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, name: str, handler: MethodHandler[_C], context: Optional[_C] = None) -> None:
        """Register a handler (and its context) for a method name.

        Registering again under the same name replaces both the handler and the context.

        :param str name: Name of the method
        :param handler: Function or coroutine function taking (request, context)
        :param context: Arbitrary value handed to the handler on every invocation
        """
        if not callable(handler):
            raise TypeError("Method handler must be callable")
        if name in self._handlers:
            logger.debug("Replacing handler for method '{}'".format(name))
        else:
            logger.debug("Registering handler for method '{}'".format(name))
        self._handlers[name] = (handler, context)

    def get(self, name: str) -> Optional[Tuple[MethodHandler, Any]]:
        """Return the (handler, context) pair registered for a name, if any"""
        return self._handlers.get(name)

    async def dispatch(self, request: MethodRequest) -> MethodResponse:
        """Invoke the handler registered for the request and return its response.

        :returns: The handler's response, a 500 response if the handler failed, or a
            501 response if no handler is registered for the method
        """
        registration = self._handlers.get(request.name)
        if registration is None:
            logger.warning(
                "No handler registered for method '{}' (rid: {})".format(
                    request.name, request.request_id
                )
            )
            return MethodResponse.create_from_method_request(
                request, status=constant.STATUS_NOT_IMPLEMENTED
            )

        handler, context = registration
        try:
            response = await _invoke(handler, request, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = HandlerError("Handler for method '{}' failed".format(request.name))
            err.__cause__ = e
            logger.error("{} (rid: {})".format(err, request.request_id), exc_info=err)
            return MethodResponse.create_from_method_request(
                request, status=constant.STATUS_SERVER_ERROR
            )

        # Responses are always tied to the request being answered
        response.request_id = request.request_id
        return response


async def _invoke(handler: MethodHandler, request: MethodRequest, context: Any) -> MethodResponse:
    result = handler(request, context)
    if inspect.isawaitable(result):
        result = await result
    if not isinstance(result, MethodResponse):
        raise TypeError(
            "Method handler returned {} instead of a MethodResponse".format(type(result).__name__)
        )
    return result
