# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the byte stream endpoint opened on a streaming gateway"""

import aiohttp
import asyncio
import logging
import ssl
from typing import Optional
from .exceptions import TransportError
from . import constant

logger = logging.getLogger(__name__)

HEADER_AUTHORIZATION = "Authorization"


class StreamEndpoint:
    """One side of a device stream: a websocket carrying raw binary frames.

    Owned by whoever connected it, and closed by them.
    """

    def __init__(
        self, session: aiohttp.ClientSession, websocket: aiohttp.ClientWebSocketResponse
    ) -> None:
        self._session = session
        self._websocket = websocket
        # Bytes received beyond what the last receive asked for
        self._buffer = bytearray()

    @property
    def closed(self) -> bool:
        return self._websocket.closed

    async def send(self, data: bytes) -> None:
        """Send the data as a single binary frame

        :raises: :class:`TransportError` if the data cannot be sent
        """
        if self.closed:
            raise TransportError("Cannot send on a closed stream endpoint")
        try:
            await self._websocket.send_bytes(data)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise TransportError("Sending on stream endpoint failed") from e
        logger.debug("Sent {} bytes on stream endpoint".format(len(data)))

    async def receive(self, size: int) -> bytes:
        """Receive exactly size bytes, spanning as many binary frames as needed

        :raises: :class:`TransportError` if the endpoint closes or fails first
        """
        while len(self._buffer) < size:
            try:
                msg = await self._websocket.receive()
            except (aiohttp.ClientError, ConnectionError) as e:
                raise TransportError("Receiving on stream endpoint failed") from e
            if msg.type == aiohttp.WSMsgType.BINARY:
                self._buffer.extend(msg.data)
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                raise TransportError(
                    "Stream endpoint closed after {} of {} bytes".format(len(self._buffer), size)
                )
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError("Receiving on stream endpoint failed") from msg.data
            else:
                logger.warning("Ignoring unexpected {} frame on stream endpoint".format(msg.type))
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        logger.debug("Received {} bytes on stream endpoint".format(len(data)))
        return data

    async def close(
        self,
        code: int = constant.STREAM_CLOSE_CODE,
        reason: str = constant.STREAM_CLOSE_REASON,
    ) -> None:
        """Close the websocket with the given code and reason, and release the session"""
        try:
            if not self._websocket.closed:
                await self._websocket.close(code=code, message=reason.encode("utf-8"))
        finally:
            await self._session.close()
        logger.debug("Stream endpoint closed")


async def connect_endpoint(
    url: str,
    authorization_token: str,
    timeout: Optional[float] = None,
    ssl_context: Optional[ssl.SSLContext] = None,
    proxy: Optional[str] = None,
) -> StreamEndpoint:
    """Open a websocket to a streaming gateway endpoint

    :param str url: The endpoint address (wss://...)
    :param str authorization_token: Token presented as a Bearer token
    :param float timeout: Seconds allowed to connect. Waits indefinitely if None.
    :param ssl_context: Custom SSL context. If not provided, a default one will be used
    :param str proxy: URL of an HTTP proxy to connect through

    :raises: :class:`TransportError` if the connection cannot be established
    """
    session = aiohttp.ClientSession()
    headers = {HEADER_AUTHORIZATION: "Bearer {}".format(authorization_token)}
    logger.debug("Connecting to stream endpoint {}".format(url))
    try:
        websocket = await asyncio.wait_for(
            session.ws_connect(
                url, headers=headers, ssl=ssl_context or ssl.create_default_context(), proxy=proxy
            ),
            timeout,
        )
    except asyncio.TimeoutError as e:
        await session.close()
        raise TransportError(
            "Connecting to stream endpoint timed out after {} seconds".format(timeout)
        ) from e
    except (aiohttp.ClientError, OSError) as e:
        await session.close()
        raise TransportError("Connecting to stream endpoint failed") from e
    except BaseException:
        await session.close()
        raise
    logger.debug("Connected to stream endpoint {}".format(url))
    return StreamEndpoint(session, websocket)
