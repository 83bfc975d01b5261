# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the service side IoT Hub client used by the samples"""

import logging
from typing import Optional, cast
from .abstract_clients import AbstractServiceClient
from .custom_typing import DirectMethodParameters, DirectMethodResult, JSONSerializable
from .exceptions import IoTHubError
from .iothub_http_client import IoTHubHTTPClient
from .models import StreamResponse
from . import constant
from . import http_path_iothub as http_path

logger = logging.getLogger(__name__)

# Stream request headers
HEADER_STREAM_CONNECT_TIMEOUT = "iothub-streaming-connect-timeout-in-seconds"
HEADER_STREAM_RESPONSE_TIMEOUT = "iothub-streaming-response-timeout-in-seconds"
# Stream response headers
HEADER_STREAM_IS_ACCEPTED = "iothub-streaming-is-accepted"
HEADER_STREAM_URL = "iothub-streaming-url"
HEADER_STREAM_AUTH_TOKEN = "iothub-streaming-auth-token"

# Extra time allowed on top of the timeouts IoT Hub itself observes
REQUEST_TIMEOUT_MARGIN = 10


class IoTHubServiceClient(IoTHubHTTPClient, AbstractServiceClient):
    """Cloud side client for opening device streams and invoking methods on devices"""

    async def create_stream(
        self,
        device_id: str,
        stream_name: str,
        connect_timeout: Optional[int] = None,
        response_timeout: Optional[int] = None,
    ) -> StreamResponse:
        """Ask IoT Hub to open a stream to a device, and wait for the device to answer

        :param str device_id: The target device ID
        :param str stream_name: Name of the stream
        :param int connect_timeout: Seconds IoT Hub waits for the device to be connected
        :param int response_timeout: Seconds IoT Hub waits for the device to answer

        :returns: The StreamResponse. If the device accepted, it holds the endpoint and token
            for the service side of the stream.
        :raises: :class:`IoTHubError` if IoTHub responds with failure
        """
        connect_timeout = connect_timeout or constant.DEFAULT_CONNECT_TIMEOUT
        response_timeout = response_timeout or constant.DEFAULT_RESPONSE_TIMEOUT
        headers = {
            HEADER_STREAM_CONNECT_TIMEOUT: str(connect_timeout),
            HEADER_STREAM_RESPONSE_TIMEOUT: str(response_timeout),
        }
        logger.debug("Requesting stream '{}' to device {}".format(stream_name, device_id))
        response_headers, _ = await self._send_request(
            "POST",
            http_path.get_stream_path(device_id, stream_name),
            description="device stream request",
            api_version=constant.IOTHUB_STREAMS_API_VERSION,
            headers=headers,
            timeout=connect_timeout + response_timeout + REQUEST_TIMEOUT_MARGIN,
        )
        is_accepted = response_headers.get(HEADER_STREAM_IS_ACCEPTED, "").lower() == "true"
        if is_accepted:
            url = response_headers.get(HEADER_STREAM_URL)
            token = response_headers.get(HEADER_STREAM_AUTH_TOKEN)
            if not url or not token:
                raise IoTHubError("IoTHub accepted the stream without an endpoint or token")
        else:
            url = None
            token = None
        logger.debug(
            "Stream '{}' to device {} {}".format(
                stream_name, device_id, "accepted" if is_accepted else "rejected"
            )
        )
        return StreamResponse(
            stream_name=stream_name, is_accepted=is_accepted, url=url, authorization_token=token
        )

    async def invoke_device_method(
        self,
        device_id: str,
        method_name: str,
        payload: JSONSerializable = None,
        connect_timeout: Optional[int] = None,
        response_timeout: Optional[int] = None,
        module_id: Optional[str] = None,
    ) -> DirectMethodResult:
        """Invoke a method on a device (or module) and wait for its result

        :param str device_id: The target device ID
        :param str method_name: Name of the method
        :param payload: JSON serializable payload sent with the invocation
        :param int connect_timeout: Seconds IoT Hub waits for the device to be connected
        :param int response_timeout: Seconds IoT Hub waits for the method to complete
        :param str module_id: The target module ID, if invoking on a module

        :returns: A dictionary containing the status and payload reported by the device
        :raises: :class:`IoTHubError` if IoTHub responds with failure
        """
        method_params: DirectMethodParameters = {
            "methodName": method_name,
            "payload": payload,
            "connectTimeoutInSeconds": connect_timeout or constant.DEFAULT_CONNECT_TIMEOUT,
            "responseTimeoutInSeconds": response_timeout or constant.DEFAULT_RESPONSE_TIMEOUT,
        }
        logger.debug("Invoking method '{}' on device {}".format(method_name, device_id))
        _, result = await self._send_request(
            "POST",
            http_path.get_method_invoke_path(device_id, module_id),
            description="method invocation",
            body=method_params,
            timeout=(
                method_params["connectTimeoutInSeconds"]
                + method_params["responseTimeoutInSeconds"]
                + REQUEST_TIMEOUT_MARGIN
            ),
        )
        if not isinstance(result, dict) or "status" not in result:
            raise IoTHubError("IoTHub returned an unexpected method invocation result")
        return cast(DirectMethodResult, result)
