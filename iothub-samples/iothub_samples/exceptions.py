# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines the errors raised by the sample flows and their IoT Hub clients"""


class RequestTimeoutError(Exception):
    """A deadline elapsed while waiting for a request or a connection"""

    pass


class RequestFailedError(Exception):
    """A step of the stream handshake was rejected or failed"""

    pass


class TransportError(Exception):
    """A socket level failure while connecting, sending or receiving on a stream endpoint"""

    pass


class HandlerError(Exception):
    """A method handler failed while producing a response"""

    pass


class IoTHubError(Exception):
    """Represents a failure reported by IoT Hub"""

    pass


class IoTHubClientError(Exception):
    """Represents a failure from the IoT Hub client"""

    pass
