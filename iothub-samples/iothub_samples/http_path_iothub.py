# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import logging
import urllib.parse
from typing import Optional

logger = logging.getLogger(__name__)

# NOTE: Paths are absolute since they are joined to the base URL of an aiohttp ClientSession.
# Values are encoded with quote(safe="") rather than quote_plus(), since a '+' in a path
# segment is a literal '+'.


def _encode(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")


def get_method_invoke_path(device_id: str, module_id: Optional[str] = None) -> str:
    """
    :return: The path for invoking a method on a device or module. It is of the format
    /twins/uri_encode($device_id)/modules/uri_encode($module_id)/methods
    """
    if module_id:
        return "/twins/{device_id}/modules/{module_id}/methods".format(
            device_id=_encode(device_id), module_id=_encode(module_id)
        )
    else:
        return "/twins/{device_id}/methods".format(device_id=_encode(device_id))


def get_stream_path(device_id: str, stream_name: str) -> str:
    """
    :return: The path for requesting a stream to a device. It is of the format
    /twins/uri_encode($device_id)/streams/uri_encode($stream_name)
    """
    return "/twins/{device_id}/streams/{stream_name}".format(
        device_id=_encode(device_id), stream_name=_encode(stream_name)
    )


def get_device_path(device_id: str) -> str:
    """
    :return: The path for a device identity in the registry. It is of the format
    /devices/uri_encode($device_id)
    """
    return "/devices/{}".format(_encode(device_id))
