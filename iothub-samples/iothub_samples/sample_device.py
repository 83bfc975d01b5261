# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains a helper for creating and removing a temporary device identity"""

import logging
import uuid
from .abstract_clients import AbstractRegistryClient
from .custom_typing import DeviceDescription
from .exceptions import IoTHubError
from . import connection_string as cs

logger = logging.getLogger(__name__)


class SampleDevice:
    """A device identity created for the duration of a sample run"""

    def __init__(self, registry: AbstractRegistryClient, device: DeviceDescription) -> None:
        self._registry = registry
        self._device = device

    @classmethod
    async def create(cls, registry: AbstractRegistryClient, prefix: str) -> "SampleDevice":
        """Create a uniquely named device identity in the IoT Hub registry

        :param registry: The registry client the device is created (and later removed) with
        :param str prefix: Prefix of the device ID. A random UUID is appended to it.

        :raises: :class:`IoTHubError` if the device cannot be created
        """
        device_id = prefix + str(uuid.uuid4())
        logger.info("Creating device {} with type SAS".format(device_id))
        device = await registry.add_device(device_id)
        return cls(registry, device)

    @property
    def id(self) -> str:
        return self._device["deviceId"]

    @property
    def device(self) -> DeviceDescription:
        return self._device

    @property
    def primary_key(self) -> str:
        try:
            return self._device["authentication"]["symmetricKey"]["primaryKey"]
        except (KeyError, TypeError) as e:
            raise IoTHubError("Device {} has no primary key".format(self.id)) from e

    @property
    def connection_string(self) -> str:
        """Device connection string for use with IoTHubDeviceClient.create_from_connection_string"""
        return cs.format_device_connection_string(
            self._registry.hostname, self.id, self.primary_key
        )

    async def remove(self) -> None:
        """Remove the device identity from the IoT Hub registry"""
        logger.info("Removing device {}".format(self.id))
        await self._registry.remove_device(self.id)
