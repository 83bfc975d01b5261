""" IoT Hub Samples

This library provides the device stream and direct method samples, together with the clients
they use to talk to IoT Hub as a device and as a service.
"""

from .device_client import IoTHubDeviceClient  # noqa: F401
from .service_client import IoTHubServiceClient  # noqa: F401
from .registry_manager import RegistryManager  # noqa: F401
from .sample_device import SampleDevice  # noqa: F401
from .stream_negotiator import StreamNegotiator  # noqa: F401
from .method_responder import MethodResponder  # noqa: F401
from .config import (  # noqa: F401
    NegotiationConfig,
    ResponderConfig,
    ProxyOptions,
    TransportType,
)
from .exceptions import (  # noqa: F401
    RequestTimeoutError,
    RequestFailedError,
    TransportError,
    HandlerError,
    IoTHubError,
    IoTHubClientError,
)
from .models import (  # noqa: F401
    ConnectionStatus,
    ConnectionStatusChangeReason,
    StreamRequest,
    StreamResponse,
    MethodRequest,
    MethodResponse,
    DeviceData,
    EchoResult,
)
