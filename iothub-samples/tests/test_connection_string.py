# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import pytest
from iothub_samples.connection_string import ConnectionString, format_device_connection_string

FAKE_HOSTNAME = "my.host.name"
FAKE_KEY = "Zm9vYmFy"

DEVICE_CS = "HostName={};DeviceId=my-device;SharedAccessKey={}".format(FAKE_HOSTNAME, FAKE_KEY)
HUB_CS = "HostName={};SharedAccessKeyName=iothubowner;SharedAccessKey={}".format(
    FAKE_HOSTNAME, FAKE_KEY
)


@pytest.mark.describe("ConnectionString")
class TestConnectionString(object):
    @pytest.mark.it("Instantiates from a valid connection string")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param(DEVICE_CS, id="Device connection string"),
            pytest.param(HUB_CS, id="Hub connection string"),
            pytest.param(
                "HostName={};DeviceId=my-device;ModuleId=my-module;SharedAccessKey={}".format(
                    FAKE_HOSTNAME, FAKE_KEY
                ),
                id="Module connection string",
            ),
            pytest.param(
                "HostName={};DeviceId=my-device;SharedAccessKey={};GatewayHostName=mygateway".format(
                    FAKE_HOSTNAME, FAKE_KEY
                ),
                id="Device connection string with gateway",
            ),
            pytest.param(
                "HostName={};DeviceId=my-device;SharedAccessSignature=SharedAccessSignature sr=a&sig=b&se=1".format(
                    FAKE_HOSTNAME
                ),
                id="Device connection string with signature",
            ),
            pytest.param(DEVICE_CS + ";", id="Trailing delimiter"),
        ],
    )
    def test_instantiates_correctly_from_string(self, input_string):
        cs = ConnectionString(input_string)
        assert isinstance(cs, ConnectionString)

    @pytest.mark.it("Raises ValueError on bad input")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param("", id="Empty string"),
            pytest.param("HostName", id="No separator"),
            pytest.param(
                "HostName=my.host.name;HostName=my.host.name;SharedAccessKey=Zm9vYmFy;DeviceId=d",
                id="Duplicate key",
            ),
            pytest.param(
                "HostName=my.host.name;DeviceId=my-device;SharedAccessKey=Zm9vYmFy;Invalid=x",
                id="Invalid key",
            ),
            pytest.param("HostName=my.host.name;DeviceId=my-device", id="No authentication"),
            pytest.param(
                "HostName=my.host.name;DeviceId=d;SharedAccessKey=Zm9vYmFy;SharedAccessSignature=s",
                id="Mixed authentication",
            ),
            pytest.param("DeviceId=my-device;SharedAccessKey=Zm9vYmFy", id="Missing HostName"),
            pytest.param(
                "HostName=my.host.name;SharedAccessKey=Zm9vYmFy", id="No device or policy name"
            ),
        ],
    )
    def test_raises_value_error_on_invalid_input(self, input_string):
        with pytest.raises(ValueError):
            ConnectionString(input_string)

    @pytest.mark.it("Raises TypeError on non-string input")
    @pytest.mark.parametrize(
        "input_val",
        [pytest.param(2123, id="Integer"), pytest.param(None, id="None")],
    )
    def test_raises_type_error_on_non_string_input(self, input_val):
        with pytest.raises(TypeError):
            ConnectionString(input_val)

    @pytest.mark.it("Uses the input connection string as a string representation")
    def test_string_representation_of_object_is_the_input_string(self):
        assert str(ConnectionString(DEVICE_CS)) == DEVICE_CS

    @pytest.mark.it("Does not reveal the key in its repr")
    def test_repr_redacts_key(self):
        assert FAKE_KEY not in repr(ConnectionString(DEVICE_CS))
        assert FAKE_HOSTNAME in repr(ConnectionString(DEVICE_CS))

    @pytest.mark.it("Supports indexing syntax to return the stored value for a given key")
    def test_indexing_key_returns_corresponding_value(self):
        cs = ConnectionString(DEVICE_CS)
        assert cs["HostName"] == FAKE_HOSTNAME
        assert cs["DeviceId"] == "my-device"
        assert cs["SharedAccessKey"] == FAKE_KEY

    @pytest.mark.it("Raises KeyError if indexing on a key not contained in the ConnectionString")
    def test_indexing_key_raises_key_error_if_key_not_in_string(self):
        with pytest.raises(KeyError):
            ConnectionString(DEVICE_CS)["SharedAccessKeyName"]

    @pytest.mark.it("Supports the 'in' operator for keys")
    def test_contains(self):
        cs = ConnectionString(HUB_CS)
        assert "SharedAccessKeyName" in cs
        assert "DeviceId" not in cs

    @pytest.mark.it(
        "Supports the 'get()' method to return the stored value for a given key, or a default"
    )
    def test_calling_get_with_key_returns_corresponding_value(self):
        cs = ConnectionString(DEVICE_CS)
        assert cs.get("HostName") == FAKE_HOSTNAME
        assert cs.get("ModuleId") is None
        assert cs.get("ModuleId", "some-default") == "some-default"

    @pytest.mark.it("Identifies whether it is a device connection string")
    @pytest.mark.parametrize(
        "input_string, expected",
        [pytest.param(DEVICE_CS, True, id="Device"), pytest.param(HUB_CS, False, id="Hub")],
    )
    def test_is_device(self, input_string, expected):
        assert ConnectionString(input_string).is_device is expected

    @pytest.mark.it("Returns the GatewayHostName as hostname if present, otherwise the HostName")
    def test_hostname(self):
        assert ConnectionString(DEVICE_CS).hostname == FAKE_HOSTNAME
        cs = ConnectionString(DEVICE_CS + ";GatewayHostName=mygateway")
        assert cs.hostname == "mygateway"


@pytest.mark.describe(".format_device_connection_string()")
class TestFormatDeviceConnectionString(object):
    @pytest.mark.it("Formats a device connection string from a hostname, device ID and key")
    def test_format(self):
        result = format_device_connection_string(FAKE_HOSTNAME, "my-device", FAKE_KEY)
        assert result == DEVICE_CS

    @pytest.mark.it("Produces a string that parses as a device connection string")
    def test_parses(self):
        cs = ConnectionString(format_device_connection_string(FAKE_HOSTNAME, "d", FAKE_KEY))
        assert cs.is_device
        assert cs["DeviceId"] == "d"
