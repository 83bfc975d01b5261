# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the client for managing device identities in the IoT Hub registry"""

import logging
from typing import cast
from .abstract_clients import AbstractRegistryClient
from .custom_typing import DeviceDescription
from .exceptions import IoTHubError
from .iothub_http_client import IoTHubHTTPClient, HEADER_IF_MATCH
from . import http_path_iothub as http_path

logger = logging.getLogger(__name__)


class RegistryManager(IoTHubHTTPClient, AbstractRegistryClient):
    """Creates, reads and deletes device identities"""

    async def add_device(self, device_id: str) -> DeviceDescription:
        """Create an enabled device identity that authenticates with SAS keys generated by
        IoT Hub

        :param str device_id: The ID of the new device

        :returns: The device description, including the generated keys
        :raises: :class:`IoTHubError` if IoTHub responds with failure
        """
        device: DeviceDescription = {
            "deviceId": device_id,
            "status": "enabled",
            "authentication": {"type": "sas"},
        }
        _, result = await self._send_request(
            "PUT",
            http_path.get_device_path(device_id),
            description="device creation",
            body=device,
        )
        logger.info("Created device {}".format(device_id))
        return _as_device_description(result)

    async def get_device(self, device_id: str) -> DeviceDescription:
        """Retrieve a device identity

        :raises: :class:`IoTHubError` if IoTHub responds with failure
        """
        _, result = await self._send_request(
            "GET", http_path.get_device_path(device_id), description="device retrieval"
        )
        return _as_device_description(result)

    async def remove_device(self, device_id: str) -> None:
        """Delete a device identity, whatever its current etag

        :raises: :class:`IoTHubError` if IoTHub responds with failure
        """
        await self._send_request(
            "DELETE",
            http_path.get_device_path(device_id),
            description="device deletion",
            headers={HEADER_IF_MATCH: '"*"'},
        )
        logger.info("Removed device {}".format(device_id))


def _as_device_description(result) -> DeviceDescription:
    if not isinstance(result, dict) or "deviceId" not in result:
        raise IoTHubError("IoTHub returned an unexpected device description")
    return cast(DeviceDescription, result)
