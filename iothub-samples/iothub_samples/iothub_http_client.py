# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the base for clients that use the IoT Hub service REST API with
the credentials of a hub shared access policy"""

import aiohttp
import asyncio
import json
import logging
import ssl
import time
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar
from . import connection_string as cs
from . import signing_mechanism as sm
from . import sastoken as st
from . import config, constant
from .exceptions import IoTHubError

logger = logging.getLogger(__name__)

# Header Definitions
HEADER_AUTHORIZATION = "Authorization"
HEADER_USER_AGENT = "User-Agent"
HEADER_IF_MATCH = "If-Match"

# Query parameter definitions
PARAM_API_VERSION = "api-version"

# Other definitions
HTTP_TIMEOUT = 60

_T = TypeVar("_T", bound="IoTHubHTTPClient")


class IoTHubHTTPClient:
    def __init__(self, client_config: config.ServiceClientConfig) -> None:
        """Instantiate the client

        Must be instantiated inside a running event loop.

        :param client_config: The config object for the client
        :type client_config: :class:`ServiceClientConfig`
        """
        self._hostname = client_config.hostname
        self._user_agent_string = "{}/{}".format(constant.IOTHUB_IDENTIFIER, constant.VERSION)
        self._sastoken_generator = st.SasTokenGenerator(
            signing_mechanism=sm.SymmetricKeySigningMechanism(client_config.shared_access_key),
            uri=client_config.hostname,
            key_name=client_config.shared_access_key_name,
            ttl=client_config.sastoken_ttl,
        )
        self._sastoken: Optional[st.SasToken] = None
        self._ssl_context = client_config.ssl_context

        # aiohttp can only route through HTTP proxies
        self._proxy: Optional[str] = None
        if client_config.proxy_options:
            self._proxy = client_config.proxy_options.http_url
            if not self._proxy:
                logger.warning(
                    "Proxy type {} not supported for HTTP requests. Proxy will not be used".format(
                        client_config.proxy_options.proxy_type
                    )
                )

        self._session = _create_client_session(self._hostname)

    @classmethod
    def create_from_connection_string(
        cls: Type[_T],
        connection_string: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        sastoken_ttl: int = 3600,
        proxy_options: Optional[config.ProxyOptions] = None,
    ) -> _T:
        """Instantiate the client from an IoT Hub connection string
        (e.g. "HostName=...;SharedAccessKeyName=...;SharedAccessKey=...")

        :raises: ValueError if the connection string is not a valid hub connection string
        """
        cs_obj = cs.ConnectionString(connection_string)
        if cs_obj.is_device:
            raise ValueError("An IoT Hub connection string is required, not a device one")
        if cs.SHARED_ACCESS_KEY_NAME not in cs_obj or cs.SHARED_ACCESS_KEY not in cs_obj:
            raise ValueError(
                "IoT Hub connection string must include SharedAccessKeyName and SharedAccessKey"
            )
        client_config = config.ServiceClientConfig(
            hostname=cs_obj[cs.HOST_NAME],
            shared_access_key_name=cs_obj[cs.SHARED_ACCESS_KEY_NAME],
            shared_access_key=cs_obj[cs.SHARED_ACCESS_KEY],
            ssl_context=ssl_context or ssl.create_default_context(),
            sastoken_ttl=sastoken_ttl,
            proxy_options=proxy_options,
        )
        return cls(client_config)

    @property
    def hostname(self) -> str:
        return self._hostname

    async def shutdown(self) -> None:
        """Shut down the client

        Invoke only when completely finished with the client for graceful exit.
        """
        await self._session.close()
        # Give the underlying SSL connections time to close
        # See: https://docs.aiohttp.org/en/stable/client_advanced.html#graceful-shutdown
        await asyncio.sleep(0.25)

    async def _get_authorization(self) -> str:
        """Return a SAS token string, generating a new one if there is none or it is near expiry"""
        if self._sastoken is None or self._sastoken.expiry_time - 60 <= time.time():
            self._sastoken = await self._sastoken_generator.generate_sastoken()
        return str(self._sastoken)

    async def _send_request(
        self,
        method: str,
        path: str,
        *,
        description: str,
        api_version: str = constant.IOTHUB_API_VERSION,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Mapping[str, str], Any]:
        """Send a request to IoT Hub

        :param str method: The HTTP method
        :param str path: The path of the resource
        :param str description: What the request is for, used when logging
        :param str api_version: The API version to request
        :param body: JSON serializable body, if any
        :param dict headers: Additional headers
        :param float timeout: Total seconds allowed for the request, if not the session default

        :returns: The response headers, and the JSON response body (None if empty)
        :raises: :class:`IoTHubError` if IoTHub responds with failure
        """
        request_headers = {
            HEADER_AUTHORIZATION: await self._get_authorization(),
            HEADER_USER_AGENT: self._user_agent_string,
        }
        if headers:
            request_headers.update(headers)

        request_kwargs: Dict[str, Any] = {}
        if timeout is not None:
            request_kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        logger.debug("Sending {} request to IoTHub...".format(description))
        async with self._session.request(
            method,
            path,
            json=body,
            params={PARAM_API_VERSION: api_version},
            headers=request_headers,
            ssl=self._ssl_context,
            proxy=self._proxy,
            **request_kwargs,
        ) as response:
            if response.status >= 300:
                logger.error("Received failure response from IoTHub for {}".format(description))
                raise IoTHubError(
                    "IoTHub responded to {description} with a failed status ({status}) - {reason}".format(
                        description=description, status=response.status, reason=response.reason
                    )
                )
            logger.debug("Successfully received response from IoTHub for {}".format(description))
            text = await response.text()
            response_headers = response.headers

        return response_headers, json.loads(text) if text else None


def _create_client_session(hostname: str) -> aiohttp.ClientSession:
    """Create and return a aiohttp ClientSession object"""
    base_url = "https://{hostname}".format(hostname=hostname)
    timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
    session = aiohttp.ClientSession(base_url=base_url, timeout=timeout)
    logger.debug(
        "Creating HTTP Session for {url} with timeout of {timeout}".format(
            url=base_url, timeout=timeout.total
        )
    )
    return session
