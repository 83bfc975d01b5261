# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains tools for working with Connection Strings.

Two kinds of connection string are understood:
    - Device connection strings, which identify a single device on an IoT Hub
      (e.g. "HostName=...;DeviceId=...;SharedAccessKey=...")
    - Hub connection strings, which identify a shared access policy on the IoT Hub itself
      (e.g. "HostName=...;SharedAccessKeyName=...;SharedAccessKey=...")
"""

__all__ = ["ConnectionString", "format_device_connection_string"]

CS_DELIMITER = ";"
CS_VAL_SEPARATOR = "="

HOST_NAME = "HostName"
SHARED_ACCESS_KEY_NAME = "SharedAccessKeyName"
SHARED_ACCESS_KEY = "SharedAccessKey"
SHARED_ACCESS_SIGNATURE = "SharedAccessSignature"
DEVICE_ID = "DeviceId"
MODULE_ID = "ModuleId"
GATEWAY_HOST_NAME = "GatewayHostName"

_valid_keys = [
    HOST_NAME,
    SHARED_ACCESS_KEY_NAME,
    SHARED_ACCESS_KEY,
    SHARED_ACCESS_SIGNATURE,
    DEVICE_ID,
    MODULE_ID,
    GATEWAY_HOST_NAME,
]


class ConnectionString(object):
    """Key/value mappings for connection details.
    Uses the same syntax as dictionary
    """

    def __init__(self, connection_string):
        """Initializer for ConnectionString

        :param str connection_string: String with connection details provided by Azure
        :raises: ValueError if provided connection_string is invalid
        :raises: TypeError if provided connection_string is not a string
        """
        self._dict = _parse_connection_string(connection_string)
        self._strrep = connection_string

    def __contains__(self, item):
        return item in self._dict

    def __getitem__(self, key):
        return self._dict[key]

    def __repr__(self):
        # Key material is never echoed back
        items = []
        for key, value in self._dict.items():
            if key in (SHARED_ACCESS_KEY, SHARED_ACCESS_SIGNATURE):
                value = "<redacted>"
            items.append(key + CS_VAL_SEPARATOR + value)
        return CS_DELIMITER.join(items)

    def __str__(self):
        return self._strrep

    def get(self, key, default=None):
        """Return the value for key if key is in the dictionary, else default

        :param str key: The key to retrieve a value for
        :param str default: The default value returned if a key is not found
        :returns: The value for the given key
        """
        return self._dict.get(key, default)

    @property
    def is_device(self):
        """True if the connection string identifies a device rather than a hub policy"""
        return DEVICE_ID in self._dict

    @property
    def hostname(self):
        """The hostname to connect to, preferring a gateway if one is specified"""
        return self._dict.get(GATEWAY_HOST_NAME, self._dict[HOST_NAME])


def format_device_connection_string(hostname, device_id, shared_access_key):
    """Return a device connection string for the given identity and key"""
    return CS_DELIMITER.join(
        [
            HOST_NAME + CS_VAL_SEPARATOR + hostname,
            DEVICE_ID + CS_VAL_SEPARATOR + device_id,
            SHARED_ACCESS_KEY + CS_VAL_SEPARATOR + shared_access_key,
        ]
    )


def _parse_connection_string(connection_string):
    """Return a dictionary of values contained in a given connection string"""
    try:
        cs_args = connection_string.strip().split(CS_DELIMITER)
    except (AttributeError, TypeError):
        raise TypeError("Connection String must be of type str")
    # Tolerate a trailing delimiter
    cs_args = [arg for arg in cs_args if arg]
    try:
        d = dict(arg.split(CS_VAL_SEPARATOR, 1) for arg in cs_args)
    except ValueError:
        # Happens when a segment has no separator, so no key/value pair can be formed
        raise ValueError("Invalid Connection String - Unable to parse")
    if len(cs_args) != len(d):
        # various errors related to incorrect parsing - duplicate args, bad syntax, etc.
        raise ValueError("Invalid Connection String - Unable to parse")
    if not all(key in _valid_keys for key in d.keys()):
        raise ValueError("Invalid Connection String - Invalid Key")
    _validate_keys(d)
    return d


def _validate_keys(d):
    """Raise ValueError if incorrect combination of keys in dict d"""
    host_name = d.get(HOST_NAME)
    shared_access_key = d.get(SHARED_ACCESS_KEY)
    shared_access_signature = d.get(SHARED_ACCESS_SIGNATURE)
    shared_access_key_name = d.get(SHARED_ACCESS_KEY_NAME)
    device_id = d.get(DEVICE_ID)

    if shared_access_key and shared_access_signature:
        raise ValueError("Invalid Connection String - Mixed authentication scheme")
    elif not shared_access_key and not shared_access_signature:
        raise ValueError("Invalid Connection String - No authentication scheme")

    if not host_name:
        raise ValueError("Invalid Connection String - Missing connection details")

    # A hub policy string has no device to scope the key to, so it must name the policy instead
    if not device_id and not shared_access_key_name:
        raise ValueError("Invalid Connection String - Missing connection details")
