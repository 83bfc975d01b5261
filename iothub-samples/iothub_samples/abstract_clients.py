# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains abstract classes for the clients the sample flows are written against.

The Stream Negotiator and Method Invocation Responder only rely on these interfaces, so any
implementation (including test doubles) can be substituted for the IoT Hub clients.
"""
from __future__ import annotations  # Needed for annotation bug < 3.10
import abc
from typing import Any, Callable, Optional
from .custom_typing import DeviceDescription, DirectMethodResult, JSONSerializable
from .models import ConnectionStatus, StreamRequest, StreamResponse


class AbstractDeviceClient(abc.ABC):
    @abc.abstractmethod
    async def connect(self) -> None:
        pass

    @abc.abstractmethod
    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def shutdown(self) -> None:
        pass

    @property
    @abc.abstractmethod
    def connection_status(self) -> ConnectionStatus:
        pass

    @abc.abstractmethod
    def on_connection_status_change(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """Subscribe to connection status changes. Returns a function that unsubscribes."""
        pass

    @abc.abstractmethod
    async def wait_for_stream_request(
        self, timeout: Optional[float] = None
    ) -> Optional[StreamRequest]:
        """Wait for a stream request. Returns None if none arrives before the timeout."""
        pass

    @abc.abstractmethod
    async def accept_stream_request(
        self, request: StreamRequest, timeout: Optional[float] = None
    ) -> None:
        pass

    @abc.abstractmethod
    async def reject_stream_request(
        self, request: StreamRequest, timeout: Optional[float] = None
    ) -> None:
        pass

    @abc.abstractmethod
    async def set_method_handler(
        self, name: str, handler: Callable[..., Any], context: Any = None
    ) -> None:
        pass


class AbstractServiceClient(abc.ABC):
    @abc.abstractmethod
    async def create_stream(
        self,
        device_id: str,
        stream_name: str,
        connect_timeout: Optional[int] = None,
        response_timeout: Optional[int] = None,
    ) -> StreamResponse:
        pass

    @abc.abstractmethod
    async def invoke_device_method(
        self,
        device_id: str,
        method_name: str,
        payload: JSONSerializable = None,
        connect_timeout: Optional[int] = None,
        response_timeout: Optional[int] = None,
    ) -> DirectMethodResult:
        pass

    @abc.abstractmethod
    async def shutdown(self) -> None:
        pass


class AbstractRegistryClient(abc.ABC):
    @property
    @abc.abstractmethod
    def hostname(self) -> str:
        pass

    @abc.abstractmethod
    async def add_device(self, device_id: str) -> DeviceDescription:
        pass

    @abc.abstractmethod
    async def get_device(self, device_id: str) -> DeviceDescription:
        pass

    @abc.abstractmethod
    async def remove_device(self, device_id: str) -> None:
        pass

    @abc.abstractmethod
    async def shutdown(self) -> None:
        pass
