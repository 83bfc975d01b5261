# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines constants for use across the iothub-samples package
"""

VERSION = "1.0.0"
IOTHUB_IDENTIFIER = "iothub-samples-py"
IOTHUB_API_VERSION = "2020-09-30"
# Device streams are only available on the preview API surface
IOTHUB_STREAMS_API_VERSION = "2020-09-30-preview"

# Stream Negotiator defaults
DEFAULT_STREAM_NAME = "TestStream"
DEFAULT_NEGOTIATION_TIMEOUT = 30 * 60
TEST_MESSAGE = "This is a test message !!!@#$@$423423\r\n"
STREAM_CLOSE_CODE = 1000
STREAM_CLOSE_REASON = "End of test"

# Method Invocation Responder defaults
WRITE_TO_CONSOLE_METHOD = "WriteToConsole"
GET_DEVICE_NAME_METHOD = "GetDeviceName"
DEFAULT_DEVICE_NAME = "DeviceClientMethodSample"
DEFAULT_HANDLER_DELAY = 10
DEFAULT_WAIT_TIME = 5 * 60
DEFAULT_POLL_INTERVAL = 1

# Service side defaults for remote invocations and stream creation
DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_RESPONSE_TIMEOUT = 30

# Status codes used when answering requests on behalf of a handler
STATUS_OK = 200
STATUS_BAD_REQUEST = 400
STATUS_SERVER_ERROR = 500
STATUS_NOT_IMPLEMENTED = 501
