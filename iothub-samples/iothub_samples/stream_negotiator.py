# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains the stream negotiator, which brings a device and a service together on
a device stream and checks the stream with an echo test.

The handshake runs in this order, all under one deadline:
    1. The device waits for a stream request while the service asks for one.
    2. The device accepts the request it received.
    3. The service learns the device accepted.
    4. Both sides connect their endpoint on the streaming gateway.
    5. The service sends a test message which the device receives and sends back.
    6. Both endpoints are closed.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence
from .abstract_clients import AbstractDeviceClient, AbstractServiceClient
from .config import NegotiationConfig
from .exceptions import RequestFailedError, RequestTimeoutError
from .models import EchoResult, StreamRequest, StreamResponse
from . import constant
from . import stream_endpoint

logger = logging.getLogger(__name__)

EndpointConnector = Callable[[str, str, Optional[float]], Awaitable[Any]]


class StreamNegotiator:
    """Negotiates a single device stream between a device client and a service client"""

    def __init__(
        self,
        device_client: AbstractDeviceClient,
        service_client: AbstractServiceClient,
        negotiation_config: NegotiationConfig,
        connect_endpoint: EndpointConnector = stream_endpoint.connect_endpoint,
    ) -> None:
        """Instantiate the negotiator

        :param device_client: The client of the device the stream is requested toward
        :param service_client: The client requesting the stream
        :param negotiation_config: Options for the negotiation
        :param connect_endpoint: Coroutine function taking (url, token, timeout) and returning
            a connected stream endpoint
        """
        self._device_client = device_client
        self._service_client = service_client
        self._config = negotiation_config
        self._connect_endpoint = connect_endpoint

    async def run(self) -> Optional[EchoResult]:
        """Negotiate the stream and perform the echo test

        :returns: The EchoResult, or None if no stream request reached the device in time
        :raises: :class:`RequestFailedError` if the device could not wait for a request, the
            request could not be accepted, or the service did not learn of the acceptance
        :raises: :class:`TransportError` if an endpoint fails to connect, send or receive
        :raises: :class:`RequestTimeoutError` if the deadline passes after the request arrived
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout

        def remaining() -> float:
            return max(deadline - loop.time(), 0)

        # The device starts waiting before the service asks, so the request is not missed
        wait_task = asyncio.ensure_future(
            self._device_client.wait_for_stream_request(timeout=self._config.timeout)
        )
        service_task = asyncio.ensure_future(
            self._service_client.create_stream(
                self._config.device_id,
                self._config.stream_name,
                connect_timeout=self._config.connect_timeout,
                response_timeout=self._config.response_timeout,
            )
        )
        try:
            request = await self._wait_for_request(wait_task, service_task)
            if request is None:
                logger.info(
                    "No stream request received within {} seconds".format(self._config.timeout)
                )
                if service_task.done() and not service_task.cancelled():
                    service_error = service_task.exception()
                    if service_error is not None:
                        logger.warning(
                            "Stream request to device {} failed: {}".format(
                                self._config.device_id, service_error
                            )
                        )
                return None

            logger.info(
                "Device streaming request received (name={}; url={})".format(
                    request.name, request.url
                )
            )
            response = await self._accept(request, service_task, remaining)
        finally:
            await _cancel_all([wait_task, service_task])

        logger.info(
            "Device streaming response received (name={}; accepted={}; url={})".format(
                response.stream_name, response.is_accepted, response.url
            )
        )
        logger.info("Now testing if we can echo information through the streaming gateway")
        return await self._echo(request, response, remaining)

    async def _wait_for_request(
        self, wait_task: "asyncio.Future[Optional[StreamRequest]]", service_task: asyncio.Future
    ) -> Optional[StreamRequest]:
        # A service request that fails before the device hears anything ends the wait
        await asyncio.wait([wait_task, service_task], return_when=asyncio.FIRST_COMPLETED)
        if not wait_task.done() and service_task.exception() is not None:
            raise RequestFailedError(
                "Stream request to device {} failed".format(self._config.device_id)
            ) from service_task.exception()
        try:
            return await wait_task
        except Exception as e:
            raise RequestFailedError(
                "Waiting for a stream request on device {} failed".format(self._config.device_id)
            ) from e

    async def _accept(
        self,
        request: StreamRequest,
        service_task: "asyncio.Future[StreamResponse]",
        remaining: Callable[[], float],
    ) -> StreamResponse:
        await self._device_client.accept_stream_request(request, timeout=remaining())
        try:
            response = await asyncio.wait_for(service_task, remaining())
        except asyncio.TimeoutError as e:
            raise RequestFailedError(
                "Service was not told of the accepted stream '{}' in time".format(request.name)
            ) from e
        except Exception as e:
            raise RequestFailedError(
                "Stream request to device {} failed".format(self._config.device_id)
            ) from e
        if not response.is_accepted:
            raise RequestFailedError(
                "Device {} did not accept stream '{}'".format(
                    self._config.device_id, response.stream_name
                )
            )
        return response

    async def _echo(
        self, request: StreamRequest, response: StreamResponse, remaining: Callable[[], float]
    ) -> EchoResult:
        connect_tasks = [
            asyncio.ensure_future(
                self._connect_endpoint(request.url, request.authorization_token, remaining())
            ),
            asyncio.ensure_future(
                self._connect_endpoint(response.url, response.authorization_token, remaining())
            ),
        ]
        try:
            device_endpoint, service_endpoint = await _join(connect_tasks, remaining())
        except BaseException:
            # Whichever endpoint did connect is still owned here
            await _close_all(
                [
                    t.result()
                    for t in connect_tasks
                    if t.done() and not t.cancelled() and t.exception() is None
                ]
            )
            raise

        try:
            message = self._config.test_message.encode("ascii")
            _, received_by_device = await _join(
                [
                    asyncio.ensure_future(service_endpoint.send(message)),
                    asyncio.ensure_future(_receive_and_log(device_endpoint, len(message), "device")),
                ],
                remaining(),
            )
            _, echoed = await _join(
                [
                    asyncio.ensure_future(device_endpoint.send(received_by_device)),
                    asyncio.ensure_future(
                        _receive_and_log(service_endpoint, len(received_by_device), "service")
                    ),
                ],
                remaining(),
            )
        finally:
            await _close_all([device_endpoint, service_endpoint])

        result = EchoResult(
            request=request,
            response=response,
            sent=message,
            received_by_device=received_by_device,
            echoed=echoed,
        )
        if result.content_preserved:
            logger.info("Echo test succeeded")
        else:
            logger.warning("Echo test completed, but the echoed data does not match")
        return result


async def _receive_and_log(endpoint: Any, size: int, side: str) -> bytes:
    data = await endpoint.receive(size)
    logger.info(
        "Received stream data by {} ws client: {}".format(side, data.decode("utf-8", "replace"))
    )
    return data


async def _join(tasks: List[asyncio.Future], timeout: float) -> List[Any]:
    """Wait for all of the tasks and return their results in order.

    The first failure is raised once the tasks still pending have been cancelled.
    """
    try:
        await asyncio.wait(tasks, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        await _cancel_all(tasks)
    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    if any(task.cancelled() for task in tasks):
        raise RequestTimeoutError("Stream negotiation deadline exceeded")
    return [task.result() for task in tasks]


async def _cancel_all(tasks: Sequence[asyncio.Future]) -> None:
    pending = [t for t in tasks if not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def _close_all(endpoints: Sequence[Any]) -> None:
    """Close the endpoints concurrently, logging any that fail to close"""
    results = await asyncio.gather(
        *[
            e.close(constant.STREAM_CLOSE_CODE, constant.STREAM_CLOSE_REASON)
            for e in endpoints
        ],
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, BaseException):
            logger.warning("Closing stream endpoint failed: {}".format(result))
