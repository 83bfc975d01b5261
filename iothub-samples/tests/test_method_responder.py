# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import json
import pytest
from iothub_samples import constant
from iothub_samples.abstract_clients import AbstractDeviceClient
from iothub_samples.config import ResponderConfig
from iothub_samples.method_responder import MethodResponder
from iothub_samples.models import (
    ConnectionStatus,
    ConnectionStatusChangeReason,
    DeviceData,
    MethodRequest,
    MethodResponse,
)


@pytest.fixture
def device_client(mocker):
    device_client = mocker.MagicMock(spec=AbstractDeviceClient)
    device_client.on_connection_status_change.return_value = mocker.MagicMock()
    return device_client


@pytest.fixture
def responder_config():
    return ResponderConfig(handler_delay=0, wait_time=0.2, poll_interval=0.05)


@pytest.fixture
def responder(device_client, responder_config):
    return MethodResponder(device_client, responder_config)


@pytest.mark.describe("MethodResponder - Instantiation")
class TestInstantiation:
    @pytest.mark.it("Uses the default ResponderConfig if none is provided")
    def test_default_config(self, device_client):
        responder = MethodResponder(device_client)
        assert responder._config.handler_delay == constant.DEFAULT_HANDLER_DELAY
        assert responder._config.wait_time == constant.DEFAULT_WAIT_TIME
        assert responder._config.device_name == constant.DEFAULT_DEVICE_NAME


@pytest.mark.describe("MethodResponder - .write_to_console()")
class TestWriteToConsole:
    @pytest.mark.it("Responds with status 200 and an empty payload, tied to the request")
    async def test_response(self, responder):
        request = MethodRequest(request_id="7", name=constant.WRITE_TO_CONSOLE_METHOD)
        response = await responder.write_to_console(request, None)
        assert isinstance(response, MethodResponse)
        assert response.status == 200
        assert response.payload == b""
        assert response.request_id == "7"

    @pytest.mark.it("Sleeps for the configured handler delay before responding")
    async def test_delay(self, mocker, device_client):
        mock_sleep = mocker.patch.object(asyncio, "sleep")
        responder = MethodResponder(device_client, ResponderConfig(handler_delay=10))
        request = MethodRequest(request_id="7", name=constant.WRITE_TO_CONSOLE_METHOD)
        await responder.write_to_console(request, None)
        assert mock_sleep.await_count == 1
        assert mock_sleep.await_args == mocker.call(10)


@pytest.mark.describe("MethodResponder - .get_device_name()")
class TestGetDeviceName:
    @pytest.mark.it("Responds with status 200 and the JSON form of the context")
    async def test_with_context(self, responder):
        request = MethodRequest(request_id="8", name=constant.GET_DEVICE_NAME_METHOD)
        response = await responder.get_device_name(request, DeviceData(name="MyDevice"))
        assert response.status == 200
        assert json.loads(response.payload.decode("utf-8")) == {"name": "MyDevice"}
        assert response.request_id == "8"

    @pytest.mark.it("Responds with status 500 and an empty payload if there is no context")
    async def test_without_context(self, responder):
        request = MethodRequest(request_id="8", name=constant.GET_DEVICE_NAME_METHOD)
        response = await responder.get_device_name(request, None)
        assert response.status == 500
        assert response.payload == b""
        assert response.request_id == "8"


@pytest.mark.describe("MethodResponder - .register_handlers()")
class TestRegisterHandlers:
    @pytest.mark.it("Registers WriteToConsole without a context")
    async def test_write_to_console(self, responder, device_client):
        await responder.register_handlers()
        calls = device_client.set_method_handler.await_args_list
        assert calls[0].args == (constant.WRITE_TO_CONSOLE_METHOD, responder.write_to_console, None)

    @pytest.mark.it("Registers GetDeviceName with a DeviceData context holding the device name")
    async def test_get_device_name(self, device_client):
        responder = MethodResponder(device_client, ResponderConfig(device_name="Thermostat"))
        await responder.register_handlers()
        calls = device_client.set_method_handler.await_args_list
        name, handler, context = calls[1].args
        assert name == constant.GET_DEVICE_NAME_METHOD
        assert handler == responder.get_device_name
        assert isinstance(context, DeviceData)
        assert context.name == "Thermostat"

    @pytest.mark.it("Subscribes to connection status changes only once")
    async def test_status_subscription(self, responder, device_client):
        await responder.register_handlers()
        await responder.register_handlers()
        assert device_client.on_connection_status_change.call_count == 1
        assert device_client.set_method_handler.await_count == 4

    @pytest.mark.it("Logs connection status changes without raising")
    async def test_status_callback(self, responder, device_client):
        await responder.register_handlers()
        callback = device_client.on_connection_status_change.call_args.args[0]
        callback(ConnectionStatus.DISCONNECTED, ConnectionStatusChangeReason.COMMUNICATION_ERROR)


@pytest.mark.describe("MethodResponder - .run()")
class TestRun:
    @pytest.mark.it("Registers the handlers if they have not been registered yet")
    async def test_registers(self, responder, device_client):
        await responder.run()
        assert device_client.set_method_handler.await_count == 2

    @pytest.mark.it("Does not register the handlers again if they were already registered")
    async def test_already_registered(self, responder, device_client):
        await responder.register_handlers()
        await responder.run()
        assert device_client.set_method_handler.await_count == 2

    @pytest.mark.it("Returns once the wait time has elapsed")
    async def test_wait_time(self, responder):
        loop = asyncio.get_running_loop()
        start = loop.time()
        await asyncio.wait_for(responder.run(), 5)
        assert loop.time() - start >= 0.2

    @pytest.mark.it("Returns at the next poll once the stop event is set")
    async def test_stop_event(self, device_client):
        responder = MethodResponder(
            device_client, ResponderConfig(handler_delay=0, wait_time=60, poll_interval=0.05)
        )
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, stop_event.set)
        await asyncio.wait_for(responder.run(stop_event), 5)
        assert stop_event.is_set()

    @pytest.mark.it("Returns immediately if the stop event is already set")
    async def test_stop_event_set(self, mocker, responder):
        stop_event = asyncio.Event()
        stop_event.set()
        mock_sleep = mocker.patch.object(asyncio, "sleep")
        await responder.run(stop_event)
        assert mock_sleep.await_count == 0

    @pytest.mark.it("Unsubscribes from connection status changes when done")
    async def test_unsubscribes(self, responder, device_client):
        unsubscribe = device_client.on_connection_status_change.return_value
        await responder.run()
        assert unsubscribe.call_count == 1

    @pytest.mark.it("Unsubscribes from connection status changes if cancelled")
    async def test_unsubscribes_on_cancel(self, device_client):
        responder = MethodResponder(device_client, ResponderConfig(wait_time=60))
        unsubscribe = device_client.on_connection_status_change.return_value
        task = asyncio.ensure_future(responder.run())
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert unsubscribe.call_count == 1
