# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import enum
import json
from typing import Optional


class ConnectionStatus(enum.Enum):
    """Connection status of a device client"""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTED_RETRYING = "Disconnected_Retrying"


class ConnectionStatusChangeReason(enum.Enum):
    """Why the connection status of a device client changed"""

    CLIENT_CLOSE = "Client_Close"
    CONNECTION_OK = "Connection_Ok"
    COMMUNICATION_ERROR = "Communication_Error"
    RETRY_EXPIRED = "Retry_Expired"
    BAD_CREDENTIAL = "Bad_Credential"


class StreamRequest:
    """Represents a request from IoT Hub to open a device stream.

    :ivar str request_id: The request id used to answer the request.
    :ivar str name: The name of the stream being requested.
    :ivar str url: The address of the streaming gateway endpoint the device should connect to.
    :ivar str authorization_token: The token presented when connecting to the endpoint.
    """

    def __init__(self, request_id: str, name: str, url: str, authorization_token: str) -> None:
        self.request_id = request_id
        self.name = name
        self.url = url
        self.authorization_token = authorization_token

    def __repr__(self) -> str:
        # The token is a credential and is left out
        return "StreamRequest(request_id={!r}, name={!r}, url={!r})".format(
            self.request_id, self.name, self.url
        )


class StreamResponse:
    """Represents the result of a service side request to open a device stream.

    :ivar str stream_name: The name of the requested stream.
    :ivar bool is_accepted: Whether the device accepted the stream.
    :ivar str url: The streaming gateway endpoint for the service side, if accepted.
    :ivar str authorization_token: The token presented when connecting to the endpoint.
    """

    def __init__(
        self,
        stream_name: str,
        is_accepted: bool,
        url: Optional[str] = None,
        authorization_token: Optional[str] = None,
    ) -> None:
        self.stream_name = stream_name
        self.is_accepted = is_accepted
        self.url = url
        self.authorization_token = authorization_token

    def __repr__(self) -> str:
        return "StreamResponse(stream_name={!r}, is_accepted={!r}, url={!r})".format(
            self.stream_name, self.is_accepted, self.url
        )


class MethodRequest:
    """Represents a request to invoke a direct method.

    :ivar str request_id: The request id.
    :ivar str name: The name of the method to be invoked.
    :ivar bytes payload: The raw payload sent with the request.
    """

    def __init__(self, request_id: str, name: str, payload: bytes = b"") -> None:
        self.request_id = request_id
        self.name = name
        self.payload = payload

    @property
    def payload_as_json(self):
        """The payload decoded as JSON, or None if there is no payload"""
        if not self.payload:
            return None
        return json.loads(self.payload.decode("utf-8"))


class MethodResponse:
    """Represents a response to a direct method.

    :ivar str request_id: The request id of the MethodRequest being responded to.
    :ivar int status: The status of the execution of the MethodRequest.
    :ivar bytes payload: The raw payload sent with the response.
    """

    def __init__(self, status: int, payload: bytes = b"", request_id: Optional[str] = None) -> None:
        self.request_id = request_id
        self.status = status
        self.payload = payload

    @classmethod
    def create_from_method_request(
        cls, method_request: MethodRequest, status: int, payload: bytes = b""
    ) -> "MethodResponse":
        """Factory method for creating a MethodResponse answering a MethodRequest."""
        return cls(status=status, payload=payload, request_id=method_request.request_id)


class DeviceData:
    """Context handed to the GetDeviceName handler"""

    def __init__(self, name: str) -> None:
        self.name = name

    def to_json(self) -> str:
        return json.dumps({"name": self.name}, separators=(",", ":"))


class EchoResult:
    """Outcome of the echo test performed over a negotiated stream.

    :ivar request: The StreamRequest received by the device.
    :ivar response: The StreamResponse received by the service.
    :ivar bytes sent: Bytes sent by the service.
    :ivar bytes received_by_device: Bytes the device received.
    :ivar bytes echoed: Bytes the service received back from the device.
    """

    def __init__(
        self,
        request: StreamRequest,
        response: StreamResponse,
        sent: bytes,
        received_by_device: bytes,
        echoed: bytes,
    ) -> None:
        self.request = request
        self.response = response
        self.sent = sent
        self.received_by_device = received_by_device
        self.echoed = echoed

    @property
    def content_preserved(self) -> bool:
        return self.received_by_device == self.sent and self.echoed == self.sent
