# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the method responder, which answers the WriteToConsole and GetDeviceName
methods on behalf of a device and keeps the device around long enough for them to be invoked"""

import asyncio
import logging
from typing import Callable, Optional
from .abstract_clients import AbstractDeviceClient
from .config import ResponderConfig
from .models import (
    ConnectionStatus,
    ConnectionStatusChangeReason,
    DeviceData,
    MethodRequest,
    MethodResponse,
)
from . import constant

logger = logging.getLogger(__name__)


class MethodResponder:
    def __init__(
        self, device_client: AbstractDeviceClient, responder_config: Optional[ResponderConfig] = None
    ) -> None:
        """Instantiate the responder

        :param device_client: The client of the device the methods are invoked on
        :param responder_config: Options for the responder. Defaults are used if not provided.
        """
        self._device_client = device_client
        self._config = responder_config or ResponderConfig()
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def write_to_console(
        self, request: MethodRequest, context: Optional[object] = None
    ) -> MethodResponse:
        """Respond with status 200 and an empty payload after the handler delay"""
        logger.info("*** {} was called.".format(request.name))
        logger.info(
            "Now sleeping for {} seconds from write_to_console".format(self._config.handler_delay)
        )
        await asyncio.sleep(self._config.handler_delay)
        logger.info("Done sleeping from write_to_console")
        logger.info("Exiting write_to_console")
        return MethodResponse.create_from_method_request(request, status=constant.STATUS_OK)

    async def get_device_name(
        self, request: MethodRequest, context: Optional[DeviceData] = None
    ) -> MethodResponse:
        """Respond with the name held by the context, or a server error if there is no context"""
        logger.info("*** {} was called.".format(request.name))
        logger.info(
            "Now sleeping for {} seconds from get_device_name".format(self._config.handler_delay)
        )
        await asyncio.sleep(self._config.handler_delay)
        logger.info("Done sleeping from get_device_name")

        if context is None:
            response = MethodResponse.create_from_method_request(
                request, status=constant.STATUS_SERVER_ERROR
            )
        else:
            response = MethodResponse.create_from_method_request(
                request, status=constant.STATUS_OK, payload=context.to_json().encode("utf-8")
            )
        logger.info("Exiting get_device_name")
        return response

    def _on_connection_status_change(
        self, status: ConnectionStatus, reason: ConnectionStatusChangeReason
    ) -> None:
        logger.info(
            "Connection status changed: status={}, reason={}.".format(status.name, reason.name)
        )

    async def register_handlers(self) -> None:
        """Register the method handlers with the device client and start logging connection
        status changes. Registering again replaces the handlers."""
        if self._unsubscribe is None:
            self._unsubscribe = self._device_client.on_connection_status_change(
                self._on_connection_status_change
            )
        await self._device_client.set_method_handler(
            constant.WRITE_TO_CONSOLE_METHOD, self.write_to_console, None
        )
        await self._device_client.set_method_handler(
            constant.GET_DEVICE_NAME_METHOD,
            self.get_device_name,
            DeviceData(name=self._config.device_name),
        )

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Wait for method invocations until the wait time elapses or the stop event is set.

        Handlers are registered first if they have not been already.

        :param stop_event: Event that ends the wait early when set (e.g. by an operator
            interrupt). It is checked every poll interval.
        """
        if self._unsubscribe is None:
            await self.register_handlers()
        logger.info(
            "Use the IoT Hub Azure Portal to call methods {} or {} within this time.".format(
                constant.GET_DEVICE_NAME_METHOD, constant.WRITE_TO_CONSOLE_METHOD
            )
        )
        logger.info(
            "Waiting up to {} seconds for IoT Hub method calls ...".format(self._config.wait_time)
        )
        loop = asyncio.get_running_loop()
        end_time = loop.time() + self._config.wait_time
        try:
            while True:
                if stop_event is not None and stop_event.is_set():
                    logger.info("Sample execution cancellation requested; will exit.")
                    break
                remaining = end_time - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(self._config.poll_interval, remaining))
        finally:
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
