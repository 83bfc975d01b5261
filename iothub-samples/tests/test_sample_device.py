# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import pytest
import uuid
from iothub_samples import connection_string as cs
from iothub_samples.abstract_clients import AbstractRegistryClient
from iothub_samples.exceptions import IoTHubError
from iothub_samples.sample_device import SampleDevice

FAKE_HOSTNAME = "fake.hostname"
FAKE_PRIMARY_KEY = "cHJpbWFyeQ=="


def make_device(device_id, **authentication):
    return {
        "deviceId": device_id,
        "status": "enabled",
        "authentication": dict(
            {"type": "sas", "symmetricKey": {"primaryKey": FAKE_PRIMARY_KEY}}, **authentication
        ),
    }


@pytest.fixture
def registry(mocker):
    registry = mocker.MagicMock(spec=AbstractRegistryClient)
    registry.hostname = FAKE_HOSTNAME
    registry.add_device = mocker.AsyncMock(side_effect=lambda device_id: make_device(device_id))
    registry.remove_device = mocker.AsyncMock(return_value=None)
    return registry


@pytest.mark.describe("SampleDevice - .create()")
class TestSampleDeviceCreate:
    @pytest.mark.it("Adds a device to the registry with the prefix followed by a random UUID")
    async def test_add_device(self, registry):
        device = await SampleDevice.create(registry, "sample-device-")
        assert registry.add_device.await_count == 1
        device_id = registry.add_device.call_args.args[0]
        assert device_id.startswith("sample-device-")
        # The remainder is a valid UUID
        uuid.UUID(device_id[len("sample-device-") :])
        assert device.id == device_id

    @pytest.mark.it("Uses a different device ID each time")
    async def test_unique(self, registry):
        first = await SampleDevice.create(registry, "sample-device-")
        second = await SampleDevice.create(registry, "sample-device-")
        assert first.id != second.id

    @pytest.mark.it("Allows any exceptions raised while adding the device to propagate")
    async def test_raises(self, registry):
        registry.add_device.side_effect = IoTHubError("conflict")
        with pytest.raises(IoTHubError):
            await SampleDevice.create(registry, "sample-device-")


@pytest.mark.describe("SampleDevice - Properties")
class TestSampleDeviceProperties:
    @pytest.mark.it("Exposes the device description returned by the registry")
    async def test_device(self, registry):
        device = await SampleDevice.create(registry, "p-")
        assert device.device == make_device(device.id)

    @pytest.mark.it("Exposes the primary symmetric key of the device")
    async def test_primary_key(self, registry):
        device = await SampleDevice.create(registry, "p-")
        assert device.primary_key == FAKE_PRIMARY_KEY

    @pytest.mark.it("Raises an IoTHubError if the device has no primary key")
    @pytest.mark.parametrize(
        "authentication",
        [
            pytest.param({"symmetricKey": {}}, id="No primary key"),
            pytest.param({"symmetricKey": None}, id="Null symmetric key"),
        ],
    )
    def test_no_primary_key(self, registry, authentication):
        device = SampleDevice(registry, make_device("my-device", **authentication))
        with pytest.raises(IoTHubError):
            device.primary_key

    @pytest.mark.it("Builds a device connection string from the registry hostname and device key")
    async def test_connection_string(self, registry):
        device = await SampleDevice.create(registry, "p-")
        cs_obj = cs.ConnectionString(device.connection_string)
        assert cs_obj.is_device
        assert cs_obj[cs.HOST_NAME] == FAKE_HOSTNAME
        assert cs_obj[cs.DEVICE_ID] == device.id
        assert cs_obj[cs.SHARED_ACCESS_KEY] == FAKE_PRIMARY_KEY


@pytest.mark.describe("SampleDevice - .remove()")
class TestSampleDeviceRemove:
    @pytest.mark.it("Removes the device from the registry it was created with")
    async def test_remove(self, mocker, registry):
        device = await SampleDevice.create(registry, "p-")
        await device.remove()
        assert registry.remove_device.await_count == 1
        assert registry.remove_device.await_args == mocker.call(device.id)
