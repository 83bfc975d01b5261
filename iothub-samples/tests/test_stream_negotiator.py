# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import pytest
from iothub_samples import constant, stream_negotiator
from iothub_samples.abstract_clients import AbstractDeviceClient, AbstractServiceClient
from iothub_samples.config import NegotiationConfig
from iothub_samples.exceptions import (
    IoTHubError,
    RequestFailedError,
    RequestTimeoutError,
    TransportError,
)
from iothub_samples.models import EchoResult, StreamRequest, StreamResponse
from iothub_samples.mqtt_client import MQTTError
from iothub_samples.stream_negotiator import StreamNegotiator

FAKE_DEVICE_ID = "fake_device"
DEVICE_URL = "wss://fake.gateway/bridges/device"
DEVICE_TOKEN = "device_token"
SERVICE_URL = "wss://fake.gateway/bridges/service"
SERVICE_TOKEN = "service_token"


class FakeEndpoint:
    """Stream endpoint whose sent data is received by its peer"""

    def __init__(self):
        self.peer = None
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed_with = None

    async def send(self, data):
        self.sent.append(data)
        self.peer.inbox.put_nowait(data)

    async def receive(self, size):
        return await self.inbox.get()

    async def close(self, code, reason):
        self.closed_with = (code, reason)


class FakeGateway:
    """Hands out a connected pair of endpoints, one per side of the stream"""

    def __init__(self):
        self.device = FakeEndpoint()
        self.service = FakeEndpoint()
        self.device.peer = self.service
        self.service.peer = self.device
        self.connect_calls = []

    async def connect(self, url, token, timeout):
        self.connect_calls.append((url, token, timeout))
        if url == DEVICE_URL:
            return self.device
        return self.service


async def hang(*args, **kwargs):
    await asyncio.sleep(60)


# ~~~~~ Fixtures ~~~~~
@pytest.fixture
def stream_request():
    return StreamRequest(
        request_id="1",
        name=constant.DEFAULT_STREAM_NAME,
        url=DEVICE_URL,
        authorization_token=DEVICE_TOKEN,
    )


@pytest.fixture
def stream_response():
    return StreamResponse(
        stream_name=constant.DEFAULT_STREAM_NAME,
        is_accepted=True,
        url=SERVICE_URL,
        authorization_token=SERVICE_TOKEN,
    )


@pytest.fixture
def device_client(mocker, stream_request):
    device_client = mocker.MagicMock(spec=AbstractDeviceClient)
    device_client.wait_for_stream_request = mocker.AsyncMock(return_value=stream_request)
    device_client.accept_stream_request = mocker.AsyncMock()
    return device_client


@pytest.fixture
def service_client(mocker, stream_response):
    service_client = mocker.MagicMock(spec=AbstractServiceClient)
    service_client.create_stream = mocker.AsyncMock(return_value=stream_response)
    return service_client


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def negotiation_config():
    return NegotiationConfig(device_id=FAKE_DEVICE_ID, timeout=10)


@pytest.fixture
def negotiator(device_client, service_client, negotiation_config, gateway):
    return StreamNegotiator(
        device_client, service_client, negotiation_config, connect_endpoint=gateway.connect
    )


# ~~~~~ Tests ~~~~~
@pytest.mark.describe("StreamNegotiator - .run() -- Successful negotiation")
class TestRunSuccess:
    @pytest.mark.it("Returns an EchoResult showing the test message went through unchanged")
    async def test_result(self, negotiator, stream_request, stream_response):
        result = await negotiator.run()

        assert isinstance(result, EchoResult)
        assert result.request is stream_request
        assert result.response is stream_response
        assert result.sent == constant.TEST_MESSAGE.encode("ascii")
        assert result.received_by_device == result.sent
        assert result.echoed == result.sent
        assert result.content_preserved

    @pytest.mark.it("Starts waiting on the device before the service requests the stream")
    async def test_order(
        self, negotiator, device_client, service_client, stream_request, stream_response
    ):
        calls = []

        async def wait_for_stream_request(timeout=None):
            calls.append("wait")
            return stream_request

        async def create_stream(*args, **kwargs):
            calls.append("create_stream")
            return stream_response

        device_client.wait_for_stream_request.side_effect = wait_for_stream_request
        service_client.create_stream.side_effect = create_stream

        await negotiator.run()

        assert calls == ["wait", "create_stream"]

    @pytest.mark.it("Requests the configured stream from the service, for the configured device")
    async def test_create_stream(self, mocker, negotiator, service_client, negotiation_config):
        await negotiator.run()
        assert service_client.create_stream.await_count == 1
        assert service_client.create_stream.await_args == mocker.call(
            FAKE_DEVICE_ID,
            negotiation_config.stream_name,
            connect_timeout=negotiation_config.connect_timeout,
            response_timeout=negotiation_config.response_timeout,
        )

    @pytest.mark.it("Waits on the device for at most the negotiation timeout")
    async def test_wait_timeout(self, mocker, negotiator, device_client):
        await negotiator.run()
        assert device_client.wait_for_stream_request.await_args == mocker.call(timeout=10)

    @pytest.mark.it("Accepts the received request, within the time remaining")
    async def test_accept(self, negotiator, device_client, stream_request):
        await negotiator.run()
        assert device_client.accept_stream_request.await_count == 1
        assert device_client.accept_stream_request.await_args.args == (stream_request,)
        timeout = device_client.accept_stream_request.await_args.kwargs["timeout"]
        assert 0 < timeout <= 10

    @pytest.mark.it("Connects each side to its own endpoint with its own token")
    async def test_connect(self, negotiator, gateway):
        await negotiator.run()
        assert len(gateway.connect_calls) == 2
        assert [call[:2] for call in gateway.connect_calls] == [
            (DEVICE_URL, DEVICE_TOKEN),
            (SERVICE_URL, SERVICE_TOKEN),
        ]
        for _, _, timeout in gateway.connect_calls:
            assert 0 < timeout <= 10

    @pytest.mark.it("Sends the test message from the service, and echoes it from the device")
    async def test_relay(self, negotiator, gateway):
        await negotiator.run()
        message = constant.TEST_MESSAGE.encode("ascii")
        assert gateway.service.sent == [message]
        assert gateway.device.sent == [message]

    @pytest.mark.it("Sends a custom test message if one is configured")
    async def test_custom_message(self, device_client, service_client, gateway):
        config = NegotiationConfig(device_id=FAKE_DEVICE_ID, test_message="ping")
        negotiator = StreamNegotiator(
            device_client, service_client, config, connect_endpoint=gateway.connect
        )
        result = await negotiator.run()
        assert result.sent == b"ping"
        assert result.echoed == b"ping"

    @pytest.mark.it("Closes both endpoints with the normal closure code and 'End of test'")
    async def test_close(self, negotiator, gateway):
        await negotiator.run()
        assert gateway.device.closed_with == (1000, "End of test")
        assert gateway.service.closed_with == (1000, "End of test")

    @pytest.mark.it("Reports a result that was not preserved if the echo does not match")
    async def test_mismatch(self, negotiator, gateway):
        async def corrupt_send(data):
            gateway.device.sent.append(data)
            gateway.service.inbox.put_nowait(data.upper())

        gateway.device.send = corrupt_send

        result = await negotiator.run()

        assert result.received_by_device == result.sent
        assert result.echoed != result.sent
        assert not result.content_preserved

    @pytest.mark.it("Does not raise if an endpoint fails to close")
    async def test_close_fails(self, negotiator, gateway, arbitrary_exception):
        async def failing_close(code, reason):
            raise arbitrary_exception

        gateway.service.close = failing_close

        result = await negotiator.run()

        assert result.content_preserved
        assert gateway.device.closed_with == (1000, "End of test")


@pytest.mark.describe("StreamNegotiator - .run() -- No stream request")
class TestRunNoRequest:
    @pytest.mark.it("Returns None if the device receives no request before the timeout")
    async def test_returns_none(self, negotiator, device_client, gateway):
        device_client.wait_for_stream_request.return_value = None
        assert await negotiator.run() is None
        assert device_client.accept_stream_request.await_count == 0
        assert gateway.connect_calls == []

    @pytest.mark.it("Cancels the outstanding service request")
    async def test_cancels_service_request(self, negotiator, device_client, service_client):
        device_client.wait_for_stream_request.return_value = None
        cancelled = asyncio.Event()

        async def create_stream(*args, **kwargs):
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        service_client.create_stream.side_effect = create_stream

        await negotiator.run()

        assert cancelled.is_set()

    @pytest.mark.it("Logs a service request that failed while no request reached the device")
    async def test_service_failure_logged(self, mocker, negotiator, device_client, service_client):
        device_client.wait_for_stream_request.return_value = None
        service_client.create_stream.side_effect = IoTHubError("hub said no")
        mock_warning = mocker.patch.object(stream_negotiator.logger, "warning")

        assert await negotiator.run() is None
        assert mock_warning.call_count == 1
        assert "hub said no" in mock_warning.call_args.args[0]

    @pytest.mark.it("Gives up once the negotiation timeout elapses")
    async def test_deadline(self, device_client, service_client, gateway):
        async def wait_for_stream_request(timeout=None):
            await asyncio.sleep(timeout)
            return None

        device_client.wait_for_stream_request.side_effect = wait_for_stream_request
        service_client.create_stream.side_effect = hang
        config = NegotiationConfig(device_id=FAKE_DEVICE_ID, timeout=0.5)
        negotiator = StreamNegotiator(
            device_client, service_client, config, connect_endpoint=gateway.connect
        )

        assert await asyncio.wait_for(negotiator.run(), 5) is None
        assert gateway.connect_calls == []


@pytest.mark.describe("StreamNegotiator - .run() -- Handshake failures")
class TestRunHandshakeFailures:
    @pytest.mark.it("Raises a RequestFailedError if the device fails while waiting for a request")
    async def test_wait_fails(self, negotiator, device_client, service_client, gateway):
        error = MQTTError(rc=4)
        device_client.wait_for_stream_request.side_effect = error
        service_client.create_stream.side_effect = hang

        with pytest.raises(RequestFailedError) as e_info:
            await negotiator.run()
        assert e_info.value.__cause__ is error
        assert device_client.accept_stream_request.await_count == 0
        assert gateway.connect_calls == []

    @pytest.mark.it(
        "Raises a RequestFailedError if the service request fails before the device hears of it"
    )
    async def test_service_fails_early(self, negotiator, device_client, service_client, gateway):
        error = IoTHubError("device not found")
        device_client.wait_for_stream_request.side_effect = hang
        service_client.create_stream.side_effect = error

        with pytest.raises(RequestFailedError) as e_info:
            await negotiator.run()
        assert e_info.value.__cause__ is error
        assert device_client.accept_stream_request.await_count == 0
        assert gateway.connect_calls == []

    @pytest.mark.it("Allows a failure to accept the request to propagate")
    async def test_accept_fails(self, negotiator, device_client, gateway):
        error = RequestFailedError("not delivered")
        device_client.accept_stream_request.side_effect = error

        with pytest.raises(RequestFailedError) as e_info:
            await negotiator.run()
        assert e_info.value is error
        assert gateway.connect_calls == []

    @pytest.mark.it("Raises a RequestFailedError if the service is told the device did not accept")
    async def test_not_accepted(self, negotiator, service_client, gateway):
        service_client.create_stream.return_value = StreamResponse(
            stream_name=constant.DEFAULT_STREAM_NAME, is_accepted=False
        )

        with pytest.raises(RequestFailedError):
            await negotiator.run()
        assert gateway.connect_calls == []

    @pytest.mark.it("Raises a RequestFailedError if the service request fails after the accept")
    async def test_service_fails_late(self, negotiator, device_client, service_client):
        accepted = asyncio.Event()
        error = IoTHubError("gateway timeout")
        device_client.accept_stream_request.side_effect = lambda *a, **k: accepted.set()

        async def create_stream(*args, **kwargs):
            await accepted.wait()
            raise error

        service_client.create_stream.side_effect = create_stream

        with pytest.raises(RequestFailedError) as e_info:
            await negotiator.run()
        assert e_info.value.__cause__ is error

    @pytest.mark.it(
        "Raises a RequestFailedError if the service does not learn of the accept before the deadline"
    )
    async def test_service_too_slow(self, device_client, service_client, gateway):
        service_client.create_stream.side_effect = hang
        config = NegotiationConfig(device_id=FAKE_DEVICE_ID, timeout=0.5)
        negotiator = StreamNegotiator(
            device_client, service_client, config, connect_endpoint=gateway.connect
        )

        with pytest.raises(RequestFailedError):
            await negotiator.run()
        assert gateway.connect_calls == []


@pytest.mark.describe("StreamNegotiator - .run() -- Stream failures")
class TestRunStreamFailures:
    @pytest.mark.it(
        "Allows a connection failure to propagate, and closes the endpoint that did connect"
    )
    async def test_connect_fails(self, negotiator, gateway):
        error = TransportError("refused")
        original_connect = gateway.connect

        async def connect(url, token, timeout):
            if url == DEVICE_URL:
                raise error
            return await original_connect(url, token, timeout)

        negotiator._connect_endpoint = connect

        with pytest.raises(TransportError) as e_info:
            await negotiator.run()
        assert e_info.value is error
        assert gateway.service.closed_with == (1000, "End of test")
        assert gateway.device.closed_with is None

    @pytest.mark.it("Allows a relay failure to propagate, and closes both endpoints")
    async def test_relay_fails(self, negotiator, gateway):
        error = TransportError("reset")

        async def failing_receive(size):
            raise error

        gateway.device.receive = failing_receive

        with pytest.raises(TransportError) as e_info:
            await negotiator.run()
        assert e_info.value is error
        assert gateway.device.closed_with == (1000, "End of test")
        assert gateway.service.closed_with == (1000, "End of test")

    @pytest.mark.it(
        "Raises a RequestTimeoutError if the echo is not complete before the deadline, and closes both endpoints"
    )
    async def test_relay_deadline(self, device_client, service_client, gateway):
        gateway.device.receive = hang
        config = NegotiationConfig(device_id=FAKE_DEVICE_ID, timeout=0.5)
        negotiator = StreamNegotiator(
            device_client, service_client, config, connect_endpoint=gateway.connect
        )

        with pytest.raises(RequestTimeoutError):
            await negotiator.run()
        assert gateway.device.closed_with == (1000, "End of test")
        assert gateway.service.closed_with == (1000, "End of test")

    @pytest.mark.it(
        "Raises a RequestTimeoutError if the endpoints do not connect before the deadline"
    )
    async def test_connect_deadline(self, device_client, service_client, gateway):
        original_connect = gateway.connect

        async def connect(url, token, timeout):
            if url == SERVICE_URL:
                await asyncio.sleep(60)
            return await original_connect(url, token, timeout)

        config = NegotiationConfig(device_id=FAKE_DEVICE_ID, timeout=0.5)
        negotiator = StreamNegotiator(
            device_client, service_client, config, connect_endpoint=connect
        )

        with pytest.raises(RequestTimeoutError):
            await negotiator.run()
        assert gateway.device.closed_with == (1000, "End of test")
