# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import enum
import logging
import socks
import ssl
from typing import Optional
from . import constant

logger = logging.getLogger(__name__)

# The max keep alive is determined by the load balancer currently.
MAX_KEEP_ALIVE_SECS = 1740


string_to_socks_constant_map = {"HTTP": socks.HTTP, "SOCKS4": socks.SOCKS4, "SOCKS5": socks.SOCKS5}
socks_constant_to_string_map = {socks.HTTP: "HTTP", socks.SOCKS4: "SOCKS4", socks.SOCKS5: "SOCKS5"}


class TransportType(enum.Enum):
    """Transports that can be requested on the command line.

    Only the MQTT variants are implemented by the device client. The others are accepted as
    input so that a clear configuration error can be given for them.
    """

    MQTT = "mqtt"
    MQTT_WS = "mqtt_ws"
    AMQP = "amqp"
    AMQP_WS = "amqp_ws"
    HTTP1 = "http1"

    @property
    def websockets(self) -> bool:
        return self in (TransportType.MQTT_WS, TransportType.AMQP_WS)

    @property
    def supported(self) -> bool:
        return self in (TransportType.MQTT, TransportType.MQTT_WS)


class ProxyOptions(object):
    """
    A class containing various options to send traffic through proxy servers.
    """

    def __init__(
        self,
        proxy_type: str,
        proxy_addr: str,
        proxy_port: int,
        proxy_username: Optional[str] = None,
        proxy_password: Optional[str] = None,
    ):
        """
        Initializer for proxy options.
        :param str proxy_type: The type of the proxy server. One of "HTTP", "SOCKS4" or "SOCKS5"
        :param str proxy_addr: IP address or DNS name of proxy server
        :param int proxy_port: The port of the proxy server
        :param str proxy_username: (optional) username for SOCKS5 proxy, or userid for SOCKS4
            proxy. Ignored by HTTP proxies.
        :param str proxy_password: (optional) Password for a SOCKS5 username.
        """
        (self._proxy_type, self._proxy_type_socks) = _format_proxy_type(proxy_type)
        self._proxy_addr = proxy_addr
        self._proxy_port = int(proxy_port)
        self._proxy_username = proxy_username
        self._proxy_password = proxy_password

    @property
    def proxy_type(self) -> str:
        return self._proxy_type

    @property
    def proxy_type_socks(self) -> int:
        return self._proxy_type_socks

    @property
    def proxy_address(self) -> str:
        return self._proxy_addr

    @property
    def proxy_port(self) -> int:
        return self._proxy_port

    @property
    def proxy_username(self) -> Optional[str]:
        return self._proxy_username

    @property
    def proxy_password(self) -> Optional[str]:
        return self._proxy_password

    @property
    def http_url(self) -> Optional[str]:
        """URL form of the proxy for HTTP clients, or None if the proxy is not an HTTP proxy"""
        if self._proxy_type != "HTTP":
            return None
        return "http://{}:{}".format(self._proxy_addr, self._proxy_port)


class ClientConfig:
    """
    Class for storing the configuration shared by the IoT Hub clients
    """

    def __init__(
        self,
        *,
        ssl_context: ssl.SSLContext,
        hostname: str,
        proxy_options: Optional[ProxyOptions] = None,
        sastoken_ttl: int = 3600,
    ) -> None:
        """Initializer for ClientConfig

        :param str hostname: The hostname being connected to
        :param ssl_context: SSLContext to use with the client
        :type ssl_context: :class:`ssl.SSLContext`
        :param proxy_options: Details of proxy configuration
        :type proxy_options: :class:`ProxyOptions`
        :param int sastoken_ttl: Time to live for generated SAS tokens, in seconds
        """
        self.hostname = hostname
        self.ssl_context = ssl_context
        self.proxy_options = proxy_options
        self.sastoken_ttl = sastoken_ttl


class DeviceClientConfig(ClientConfig):
    def __init__(
        self,
        *,
        device_id: str,
        shared_access_key: str,
        module_id: Optional[str] = None,
        product_info: str = "",
        keep_alive: int = 60,
        auto_reconnect: bool = True,
        reconnect_interval: int = 10,
        websockets: bool = False,
        api_version: str = constant.IOTHUB_API_VERSION,
        **kwargs,
    ) -> None:
        """
        Config object used for the device client

        :param str device_id: The device identity being used with the IoTHub
        :param str shared_access_key: The device key used to generate SAS tokens
        :param str module_id: The module identity being used with the IoTHub
        :param str product_info: A custom identification string.
        :param int keep_alive: Maximum period in seconds between communications with the
            broker.
        :param bool auto_reconnect: Indicates if dropped connection should result in attempts to
            re-establish it
        :param int reconnect_interval: Seconds between reconnect attempts
        :param bool websockets: Use MQTT over websockets (port 443) instead of TCP (port 8883)
        :param str api_version: The IoT Hub API version requested when connecting

        Additional parameters found in the docstring of the parent class
        """
        self.device_id = device_id
        self.module_id = module_id
        self.shared_access_key = shared_access_key
        self.product_info = product_info
        self.keep_alive = _sanitize_keep_alive(keep_alive)
        self.auto_reconnect = auto_reconnect
        self.reconnect_interval = reconnect_interval
        self.websockets = websockets
        self.api_version = api_version
        super().__init__(**kwargs)


class ServiceClientConfig(ClientConfig):
    def __init__(self, *, shared_access_key_name: str, shared_access_key: str, **kwargs) -> None:
        """
        Config object used for the service and registry clients

        :param str shared_access_key_name: Name of the hub shared access policy
        :param str shared_access_key: Key of the hub shared access policy
        """
        self.shared_access_key_name = shared_access_key_name
        self.shared_access_key = shared_access_key
        super().__init__(**kwargs)


class NegotiationConfig:
    def __init__(
        self,
        *,
        device_id: str,
        stream_name: str = constant.DEFAULT_STREAM_NAME,
        timeout: float = constant.DEFAULT_NEGOTIATION_TIMEOUT,
        test_message: str = constant.TEST_MESSAGE,
        connect_timeout: int = constant.DEFAULT_CONNECT_TIMEOUT,
        response_timeout: int = constant.DEFAULT_RESPONSE_TIMEOUT,
    ) -> None:
        """Options for a single stream negotiation

        :param str device_id: The device the stream is requested toward
        :param str stream_name: Name given to the requested stream
        :param float timeout: Deadline (in seconds) shared by the whole negotiation
        :param str test_message: ASCII text relayed through the stream and echoed back
        :param int connect_timeout: Seconds IoT Hub waits for the device to be connected
        :param int response_timeout: Seconds IoT Hub waits for the device to answer
        """
        if timeout <= 0:
            raise ValueError("'timeout' must be greater than 0")
        try:
            test_message.encode("ascii")
        except UnicodeEncodeError:
            raise ValueError("'test_message' must be ASCII")
        if not test_message:
            raise ValueError("'test_message' cannot be empty")
        self.device_id = device_id
        self.stream_name = stream_name
        self.timeout = timeout
        self.test_message = test_message
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout


class ResponderConfig:
    def __init__(
        self,
        *,
        handler_delay: float = constant.DEFAULT_HANDLER_DELAY,
        wait_time: float = constant.DEFAULT_WAIT_TIME,
        poll_interval: float = constant.DEFAULT_POLL_INTERVAL,
        device_name: str = constant.DEFAULT_DEVICE_NAME,
    ) -> None:
        """Options for the method invocation responder

        :param float handler_delay: Seconds each handler sleeps before responding
        :param float wait_time: Seconds to keep waiting for invocations
        :param float poll_interval: Seconds between checks for an operator interrupt
        :param str device_name: Name reported by the GetDeviceName method
        """
        if handler_delay < 0:
            raise ValueError("'handler_delay' cannot be negative")
        if wait_time < 0:
            raise ValueError("'wait_time' cannot be negative")
        if poll_interval <= 0:
            raise ValueError("'poll_interval' must be greater than 0")
        self.handler_delay = handler_delay
        self.wait_time = wait_time
        self.poll_interval = poll_interval
        self.device_name = device_name


# Sanitization #


def _format_proxy_type(proxy_type):
    """Returns a tuple of formats for proxy type (string, socks library constant)"""
    try:
        return (proxy_type, string_to_socks_constant_map[proxy_type])
    except KeyError:
        # Also accept the socks library constants themselves
        try:
            return (socks_constant_to_string_map[proxy_type], proxy_type)
        except KeyError:
            raise ValueError("Invalid Proxy Type")


def _sanitize_keep_alive(keep_alive):
    try:
        keep_alive = int(keep_alive)
    except (ValueError, TypeError):
        raise TypeError("Invalid type for 'keep alive'. Must be a numeric value.")

    if keep_alive <= 0:
        # Not allowing a keep alive of 0 as this would mean frequent ping exchanges.
        raise ValueError("'keep alive' must be greater than 0")

    if keep_alive > MAX_KEEP_ALIVE_SECS:
        raise ValueError("'keep_alive' cannot exceed 1740 seconds (29 minutes)")

    return keep_alive
