# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the device side IoT Hub client used by the samples"""

from __future__ import annotations  # Needed for annotation bug < 3.10
import asyncio
import logging
import ssl
import urllib.parse
from typing import Any, AsyncGenerator, Callable, Optional, Set, TypeVar, Union
from . import connection_string as cs
from . import signing_mechanism as sm
from . import sastoken as st
from . import mqtt_client as mqtt
from . import mqtt_topic_iothub as mqtt_topic
from . import config, constant, handle_exceptions
from .abstract_clients import AbstractDeviceClient
from .connection_status import ConnectionStatusNotifier
from .custom_typing import FunctionOrCoroutine
from .exceptions import RequestFailedError, IoTHubClientError
from .method_registry import MethodHandler, MethodHandlerRegistry
from .models import (
    ConnectionStatus,
    ConnectionStatusChangeReason,
    MethodRequest,
    MethodResponse,
    StreamRequest,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_C = TypeVar("_C")

WEBSOCKETS_PORT = 443
WEBSOCKETS_PATH = "/$iothub/websocket"
TCP_PORT = 8883


class IoTHubDeviceClient(AbstractDeviceClient):
    """A device identity connected to IoT Hub over MQTT.

    Surfaces incoming stream requests, dispatches incoming method requests to registered
    handlers, and reports connection status changes to subscribers.

    Must be instantiated inside a running event loop.
    """

    def __init__(self, client_config: config.DeviceClientConfig) -> None:
        """Instantiate the client

        :param client_config: The config object for the client
        :type client_config: :class:`DeviceClientConfig`
        """
        # Identity
        self._device_id = client_config.device_id
        self._module_id = client_config.module_id
        self._client_id = _format_client_id(self._device_id, self._module_id)
        self._username = _format_username(
            hostname=client_config.hostname,
            client_id=self._client_id,
            product_info=client_config.product_info,
            api_version=client_config.api_version,
        )
        self._auto_reconnect = client_config.auto_reconnect

        # SAS
        self._sastoken_generator = st.SasTokenGenerator(
            signing_mechanism=sm.SymmetricKeySigningMechanism(client_config.shared_access_key),
            uri=_format_sas_uri(client_config.hostname, self._device_id, self._module_id),
            ttl=client_config.sastoken_ttl,
        )

        # MQTT
        self._mqtt_client = _create_mqtt_client(self._client_id, client_config)
        self._mqtt_client.on_mqtt_connected_handler = self._on_connected
        self._mqtt_client.on_mqtt_disconnected_handler = self._on_disconnected
        self._mqtt_client.on_mqtt_reconnect_failed_handler = self._on_reconnect_failed

        # Connection status
        self._status_notifier = ConnectionStatusNotifier()

        # Incoming data
        self._incoming_stream_requests = self._create_incoming_data_generator(
            topic=mqtt_topic.get_stream_topic_for_subscribe(),
            transform_fn=_create_stream_request_from_mqtt_message,
        )
        self._incoming_method_requests = self._create_incoming_data_generator(
            topic=mqtt_topic.get_method_topic_for_subscribe(),
            transform_fn=_create_method_request_from_mqtt_message,
        )
        self._pending_stream_requests: asyncio.Queue[StreamRequest] = asyncio.Queue()
        self._stream_requests_enabled = False
        self._method_requests_enabled = False

        # Methods
        self._method_registry = MethodHandlerRegistry()
        self._method_tasks: Set[asyncio.Task] = set()

        # Background Tasks (set when the corresponding receive is enabled)
        self._process_stream_requests_bg_task: Optional[asyncio.Task[None]] = None
        self._process_method_requests_bg_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def create_from_connection_string(
        cls,
        connection_string: str,
        transport_type: Union[str, config.TransportType] = config.TransportType.MQTT,
        ssl_context: Optional[ssl.SSLContext] = None,
        sastoken_ttl: int = 3600,
        **kwargs: Any,
    ) -> "IoTHubDeviceClient":
        """Instantiate the client from an IoT Hub device connection string

        :param str connection_string: The IoT Hub device connection string
        :param transport_type: The transport to connect with. Only "mqtt" and "mqtt_ws" are
            supported.
        :param ssl_context: Custom SSL context. If not provided, a default one will be used
        :type ssl_context: :class:`ssl.SSLContext`
        :param int sastoken_ttl: Time-to-live (in seconds) for SAS tokens used to connect.

        :keyword int keep_alive: Maximum period in seconds between MQTT communications.
        :keyword str product_info: Arbitrary product information added to the User-Agent
        :keyword proxy_options: Configuration structure for sending traffic through a proxy server
        :type: proxy_options: :class:`ProxyOptions`
        :keyword bool auto_reconnect: Reconnect after an unexpected disconnect. Default True
        :keyword int reconnect_interval: Seconds between reconnect attempts. Default 10
        :keyword str api_version: IoT Hub API version requested when connecting

        :raises: ValueError if the connection string or transport is invalid
        :raises: TypeError if an invalid keyword argument is provided
        """
        _validate_kwargs(**kwargs)
        transport_type = _sanitize_transport_type(transport_type)

        cs_obj = cs.ConnectionString(connection_string)
        if not cs_obj.is_device:
            raise ValueError("A device connection string (including DeviceId) is required")
        if cs.SHARED_ACCESS_KEY not in cs_obj:
            raise ValueError("Device connection string must include a SharedAccessKey")

        client_config = config.DeviceClientConfig(
            hostname=cs_obj.hostname,
            device_id=cs_obj[cs.DEVICE_ID],
            module_id=cs_obj.get(cs.MODULE_ID),
            shared_access_key=cs_obj[cs.SHARED_ACCESS_KEY],
            ssl_context=ssl_context or _default_ssl_context(),
            sastoken_ttl=sastoken_ttl,
            websockets=transport_type.websockets,
            **kwargs,
        )
        return cls(client_config)

    def _create_incoming_data_generator(
        self, topic: str, transform_fn: Callable[[Any], _T]
    ) -> AsyncGenerator[_T, None]:
        """Return a generator for incoming MQTT data on a given topic, yielding a transformation
        of that data via the given transform function"""
        self._mqtt_client.add_incoming_message_filter(topic)
        incoming_mqtt_messages = self._mqtt_client.get_incoming_message_generator(topic)

        async def generator() -> AsyncGenerator[_T, None]:
            async for mqtt_message in incoming_mqtt_messages:
                try:
                    item = transform_fn(mqtt_message)
                except Exception as e:
                    logger.error("Failure transforming MQTTMessage: {}".format(e))
                    logger.warning(
                        "Dropping MQTTMessage on {} that could not be transformed".format(
                            mqtt_message.topic
                        )
                    )
                    continue
                yield item

        return generator()

    # Connection ##

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._status_notifier.status

    def on_connection_status_change(
        self, callback: FunctionOrCoroutine[[ConnectionStatus, ConnectionStatusChangeReason], None]
    ) -> Callable[[], None]:
        """Subscribe a function or coroutine function invoked with (status, reason) upon every
        connection status change.

        :returns: A function that removes the subscription
        """
        return self._status_notifier.subscribe(callback)

    def _on_connected(self) -> None:
        self._status_notifier.notify(
            ConnectionStatus.CONNECTED, ConnectionStatusChangeReason.CONNECTION_OK
        )

    def _on_disconnected(self, cause: Optional[mqtt.MQTTError]) -> None:
        if cause is None:
            # Requested disconnect, reported by .disconnect()
            return
        logger.warning("Connection to IoT Hub dropped: {}".format(cause))
        if self._auto_reconnect:
            status = ConnectionStatus.DISCONNECTED_RETRYING
        else:
            status = ConnectionStatus.DISCONNECTED
        self._status_notifier.notify(status, ConnectionStatusChangeReason.COMMUNICATION_ERROR)

    def _on_reconnect_failed(self, error: Exception) -> None:
        if getattr(error, "fatal", False):
            reason = ConnectionStatusChangeReason.BAD_CREDENTIAL
        else:
            reason = ConnectionStatusChangeReason.RETRY_EXPIRED
        self._status_notifier.notify(ConnectionStatus.DISCONNECTED, reason)

    async def connect(self) -> None:
        """Connect to IoT Hub

        :raises: MQTTConnectionFailedError if there is a failure connecting
        :raises: SasTokenError if a SAS token cannot be generated
        """
        if self._mqtt_client.is_connected():
            logger.debug("Already connected to IoT Hub")
            return
        self._status_notifier.notify(
            ConnectionStatus.CONNECTING, ConnectionStatusChangeReason.CONNECTION_OK
        )
        try:
            sastoken = await self._sastoken_generator.generate_sastoken()
            self._mqtt_client.set_credentials(self._username, str(sastoken))
            logger.debug("Connecting to IoTHub...")
            await self._mqtt_client.connect()
        except mqtt.MQTTConnectionFailedError as e:
            if e.fatal:
                reason = ConnectionStatusChangeReason.BAD_CREDENTIAL
            else:
                reason = ConnectionStatusChangeReason.COMMUNICATION_ERROR
            self._status_notifier.notify(ConnectionStatus.DISCONNECTED, reason)
            raise
        except BaseException:
            self._status_notifier.notify(
                ConnectionStatus.DISCONNECTED, ConnectionStatusChangeReason.CLIENT_CLOSE
            )
            raise
        logger.debug("Connect succeeded")

        # Subscriptions requested before the connection existed
        if len(self._method_registry) > 0:
            await self._enable_method_request_receive()

    async def disconnect(self) -> None:
        """Disconnect from IoT Hub"""
        logger.debug("Disconnecting from IoTHub...")
        await self._mqtt_client.disconnect()
        self._stream_requests_enabled = False
        self._method_requests_enabled = False
        self._status_notifier.notify(
            ConnectionStatus.DISCONNECTED, ConnectionStatusChangeReason.CLIENT_CLOSE
        )
        logger.debug("Disconnect succeeded")

    async def shutdown(self) -> None:
        """Stop background work and disconnect.

        Must be invoked when done with the client for graceful exit.
        """
        logger.debug("Shutting down IoTHubDeviceClient...")
        cancelled_tasks = list(self._method_tasks)
        bg_tasks = [self._process_stream_requests_bg_task, self._process_method_requests_bg_task]
        cancelled_tasks.extend(t for t in bg_tasks if t)
        self._process_stream_requests_bg_task = None
        self._process_method_requests_bg_task = None
        for task in cancelled_tasks:
            task.cancel()

        results = await asyncio.gather(
            *cancelled_tasks, asyncio.shield(self.disconnect()), return_exceptions=True
        )

        for generator in (self._incoming_stream_requests, self._incoming_method_requests):
            await generator.aclose()

        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                raise result

    # Streams ##

    async def _enable_stream_request_receive(self) -> None:
        if self._stream_requests_enabled:
            return
        logger.debug("Enabling receive for stream requests...")
        if not self._process_stream_requests_bg_task:
            self._process_stream_requests_bg_task = asyncio.create_task(
                self._process_stream_requests()
            )
        await self._mqtt_client.subscribe(mqtt_topic.get_stream_topic_for_subscribe())
        self._stream_requests_enabled = True
        logger.debug("Stream request receive enabled")

    async def _process_stream_requests(self) -> None:
        async for request in self._incoming_stream_requests:
            logger.debug("Stream request received: {}".format(request))
            self._pending_stream_requests.put_nowait(request)

    async def wait_for_stream_request(
        self, timeout: Optional[float] = None
    ) -> Optional[StreamRequest]:
        """Wait for IoT Hub to deliver a stream request for this device

        :param float timeout: Seconds to wait. Waits indefinitely if None.

        :returns: The StreamRequest, or None if no request arrived before the timeout
        :raises: MQTTError if receiving stream requests cannot be enabled
        """
        await self._enable_stream_request_receive()
        try:
            return await asyncio.wait_for(self._pending_stream_requests.get(), timeout)
        except asyncio.TimeoutError:
            logger.debug("No stream request received within {} seconds".format(timeout))
            return None

    async def accept_stream_request(
        self, request: StreamRequest, timeout: Optional[float] = None
    ) -> None:
        """Tell IoT Hub the device accepts a stream request

        :raises: RequestFailedError if the answer cannot be delivered within the timeout
        """
        await self._answer_stream_request(request, constant.STATUS_OK, timeout)

    async def reject_stream_request(
        self, request: StreamRequest, timeout: Optional[float] = None
    ) -> None:
        """Tell IoT Hub the device rejects a stream request

        :raises: RequestFailedError if the answer cannot be delivered within the timeout
        """
        await self._answer_stream_request(request, constant.STATUS_BAD_REQUEST, timeout)

    async def _answer_stream_request(
        self, request: StreamRequest, status: int, timeout: Optional[float]
    ) -> None:
        topic = mqtt_topic.get_stream_topic_for_publish(request.request_id, status)
        logger.debug(
            "Answering stream request '{}' with status {} (rid: {})".format(
                request.name, status, request.request_id
            )
        )
        try:
            await asyncio.wait_for(self._mqtt_client.publish(topic, None), timeout)
        except asyncio.TimeoutError as e:
            raise RequestFailedError(
                "Answer to stream request '{}' not delivered within {} seconds".format(
                    request.name, timeout
                )
            ) from e
        except mqtt.MQTTError as e:
            raise RequestFailedError(
                "Answer to stream request '{}' failed: {}".format(request.name, e)
            ) from e

    # Methods ##

    async def set_method_handler(
        self, name: str, handler: MethodHandler[_C], context: Optional[_C] = None
    ) -> None:
        """Register a handler to be invoked when the named method is invoked on this device.

        Registering again under the same name replaces the previous handler and context.

        :param str name: Name of the method
        :param handler: Function or coroutine function taking (MethodRequest, context) and
            returning a MethodResponse
        :param context: Value handed to the handler on every invocation

        :raises: MQTTError if receiving method requests cannot be enabled
        """
        self._method_registry.register(name, handler, context)
        if self._mqtt_client.is_connected():
            await self._enable_method_request_receive()

    async def _enable_method_request_receive(self) -> None:
        if self._method_requests_enabled:
            return
        logger.debug("Enabling receive for method requests...")
        if not self._process_method_requests_bg_task:
            self._process_method_requests_bg_task = asyncio.create_task(
                self._process_method_requests()
            )
        await self._mqtt_client.subscribe(mqtt_topic.get_method_topic_for_subscribe())
        self._method_requests_enabled = True
        logger.debug("Method request receive enabled")

    async def _process_method_requests(self) -> None:
        async for request in self._incoming_method_requests:
            # One task per invocation
            task = asyncio.create_task(self._handle_method_request(request))
            self._method_tasks.add(task)
            task.add_done_callback(self._method_tasks.discard)

    async def _handle_method_request(self, request: MethodRequest) -> None:
        logger.debug(
            "Method request received for '{}' (rid: {})".format(request.name, request.request_id)
        )
        response = await self._method_registry.dispatch(request)
        try:
            await self.send_method_response(response)
        except mqtt.MQTTError as e:
            handle_exceptions.handle_background_exception(
                e, "response to method '{}'".format(request.name)
            )

    async def send_method_response(self, method_response: MethodResponse) -> None:
        """Send a method response to IoT Hub.

        :raises: MQTTError if there is an error sending the MethodResponse
        :raises: IoTHubClientError if the response does not identify a request
        """
        if method_response.request_id is None:
            raise IoTHubClientError("MethodResponse has no request id")
        topic = mqtt_topic.get_method_topic_for_publish(
            method_response.request_id, method_response.status
        )
        logger.debug(
            "Sending method response to IoTHub... (rid: {})".format(method_response.request_id)
        )
        await self._mqtt_client.publish(topic, method_response.payload)
        logger.debug(
            "Sending method response succeeded (rid: {})".format(method_response.request_id)
        )


def _validate_kwargs(exclude=[], **kwargs) -> None:
    """Raise TypeError if an unsupported option has been provided"""
    valid_kwargs = [
        "keep_alive",
        "product_info",
        "proxy_options",
        "auto_reconnect",
        "reconnect_interval",
        "api_version",
    ]

    for kwarg in kwargs:
        if (kwarg not in valid_kwargs) or (kwarg in exclude):
            raise TypeError("Unsupported keyword argument: '{}'".format(kwarg))


def _sanitize_transport_type(
    transport_type: Union[str, config.TransportType]
) -> config.TransportType:
    try:
        transport_type = config.TransportType(transport_type)
    except ValueError:
        raise ValueError("Invalid transport type: '{}'".format(transport_type))
    if not transport_type.supported:
        raise ValueError(
            "Transport type '{}' is not supported. Use 'mqtt' or 'mqtt_ws'".format(
                transport_type.value
            )
        )
    return transport_type


def _default_ssl_context() -> ssl.SSLContext:
    """Return a default SSLContext"""
    ssl_context = ssl.SSLContext(protocol=ssl.PROTOCOL_TLS_CLIENT)
    ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    ssl_context.load_default_certs()
    return ssl_context


def _format_client_id(device_id: str, module_id: Optional[str] = None) -> str:
    if module_id:
        return "{}/{}".format(device_id, module_id)
    return device_id


def _format_sas_uri(hostname: str, device_id: str, module_id: Optional[str]) -> str:
    """Format the SAS URI for a device or module identity"""
    if module_id:
        return "{hostname}/devices/{device_id}/modules/{module_id}".format(
            hostname=hostname, device_id=device_id, module_id=module_id
        )
    return "{hostname}/devices/{device_id}".format(hostname=hostname, device_id=device_id)


def _create_mqtt_client(
    client_id: str, client_config: config.DeviceClientConfig
) -> mqtt.MQTTClient:
    logger.debug("Creating MQTTClient")
    logger.debug("Using {} as hostname".format(client_config.hostname))
    logger.debug("Using {} as client id".format(client_id))

    if client_config.websockets:
        logger.debug("Using MQTT over websockets")
        transport = "websockets"
        port = WEBSOCKETS_PORT
        websockets_path: Optional[str] = WEBSOCKETS_PATH
    else:
        logger.debug("Using MQTT over TCP")
        transport = "tcp"
        port = TCP_PORT
        websockets_path = None

    return mqtt.MQTTClient(
        client_id=client_id,
        hostname=client_config.hostname,
        port=port,
        transport=transport,
        keep_alive=client_config.keep_alive,
        auto_reconnect=client_config.auto_reconnect,
        reconnect_interval=client_config.reconnect_interval,
        ssl_context=client_config.ssl_context,
        websockets_path=websockets_path,
        proxy_options=client_config.proxy_options,
    )


def _format_username(hostname: str, client_id: str, product_info: str, api_version: str) -> str:
    query_param_seq = [
        ("api-version", api_version),
        ("DeviceClientType", constant.IOTHUB_IDENTIFIER + "/" + constant.VERSION + product_info),
    ]
    # The hostname and client id are NOT url encoded, but the query parameters MUST be
    return "{hostname}/{client_id}/?{query_params}".format(
        hostname=hostname,
        client_id=client_id,
        query_params=urllib.parse.urlencode(query_param_seq, quote_via=urllib.parse.quote),
    )


def _create_stream_request_from_mqtt_message(mqtt_message: Any) -> StreamRequest:
    """Given an MQTTMessage, create and return a StreamRequest"""
    details = mqtt_topic.extract_stream_request_details_from_topic(mqtt_message.topic)
    return StreamRequest(**details)


def _create_method_request_from_mqtt_message(mqtt_message: Any) -> MethodRequest:
    """Given an MQTTMessage, create and return a MethodRequest"""
    return MethodRequest(
        request_id=mqtt_topic.extract_request_id_from_method_request_topic(mqtt_message.topic),
        name=mqtt_topic.extract_name_from_method_request_topic(mqtt_message.topic),
        payload=mqtt_message.payload or b"",
    )
