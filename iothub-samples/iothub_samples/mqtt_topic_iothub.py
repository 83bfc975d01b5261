# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import logging
import urllib.parse
from typing import Dict, Tuple, Union

logger = logging.getLogger(__name__)

# NOTE: Use urllib.parse.quote() with safe="" for encoding, so that "/" is encoded too.
# Never use quote_plus()/unquote_plus(): '+' and ' ' are not interchangeable in MQTT topics.

METHOD_REQUEST_PREFIX = "$iothub/methods/POST/"
STREAM_REQUEST_PREFIX = "$iothub/streams/POST/"


def get_method_topic_for_subscribe() -> str:
    """
    :return: The topic for ALL incoming methods. It is of the format
    "$iothub/methods/POST/#"
    """
    return METHOD_REQUEST_PREFIX + "#"


def get_method_topic_for_publish(request_id: str, status: Union[str, int]) -> str:
    """
    :return: The topic for publishing method responses. It is of the format
    "$iothub/methods/res/<status>/?$rid=<requestId>"
    """
    return "$iothub/methods/res/{status}/?$rid={request_id}".format(
        status=urllib.parse.quote(str(status), safe=""),
        request_id=urllib.parse.quote(str(request_id), safe=""),
    )


def get_stream_topic_for_subscribe() -> str:
    """
    :return: The topic for ALL incoming stream requests. It is of the format
    "$iothub/streams/POST/#"
    """
    return STREAM_REQUEST_PREFIX + "#"


def get_stream_topic_for_publish(request_id: str, status: Union[str, int]) -> str:
    """
    :return: The topic for answering a stream request. It is of the format
    "$iothub/streams/res/<status>/?$rid=<requestId>"
    """
    return "$iothub/streams/res/{status}/?$rid={request_id}".format(
        status=urllib.parse.quote(str(status), safe=""),
        request_id=urllib.parse.quote(str(request_id), safe=""),
    )


def extract_name_from_method_request_topic(topic: str) -> str:
    """
    Extract the method name from a method request topic of the format
    "$iothub/methods/POST/{method name}/?$rid={request id}"

    :raises: ValueError if topic has incorrect format
    """
    name, _ = _split_request_topic(topic, METHOD_REQUEST_PREFIX)
    return name


def extract_request_id_from_method_request_topic(topic: str) -> str:
    """
    Extract the Request ID (RID) from a method request topic of the format
    "$iothub/methods/POST/{method name}/?$rid={request id}"

    :raises: ValueError if topic has incorrect format, or has no request id
    """
    _, properties = _split_request_topic(topic, METHOD_REQUEST_PREFIX)
    return _require(properties, "$rid")


def extract_stream_request_details_from_topic(topic: str) -> Dict[str, str]:
    """
    Extract the details of a stream request from a topic of the format
    "$iothub/streams/POST/{stream name}/?$rid={request id}&$url={url}&$auth={token}"

    :returns: A dictionary with the keys "name", "request_id", "url" and "authorization_token"
    :raises: ValueError if topic has incorrect format, or any detail is missing
    """
    name, properties = _split_request_topic(topic, STREAM_REQUEST_PREFIX)
    return {
        "name": name,
        "request_id": _require(properties, "$rid"),
        "url": _require(properties, "$url"),
        "authorization_token": _require(properties, "$auth"),
    }


def _split_request_topic(topic: str, prefix: str) -> Tuple[str, Dict[str, str]]:
    """Split a request topic into the decoded name following the prefix and its properties"""
    if not topic.startswith(prefix):
        raise ValueError("topic has incorrect format")
    path, _, properties_str = topic[len(prefix) :].partition("?")
    name = urllib.parse.unquote(path.rstrip("/"))
    if not name or "/" in path.rstrip("/"):
        raise ValueError("topic has incorrect format")
    return name, _extract_properties(properties_str)


def _require(properties: Dict[str, str], key: str) -> str:
    value = properties.get(key)
    if not value:
        raise ValueError("No {} in topic".format(key))
    return value


def _extract_properties(properties_str: str) -> Dict[str, str]:
    """Return a dictionary of properties from a string in the format
    {key1}={value1}&{key2}={value2}...&{keyn}={valuen}

    A key with no "=" has an empty string value. Values are split on the first "=" only,
    since tokens may contain padding characters.
    """
    d: Dict[str, str] = {}
    if not properties_str:
        return d

    for entry in properties_str.split("&"):
        if not entry:
            continue
        key, _, value = entry.partition("=")
        d[urllib.parse.unquote(key)] = urllib.parse.unquote(value)
    return d
