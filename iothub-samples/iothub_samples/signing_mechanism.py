# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import abc
import base64
import binascii
import hmac
import hashlib
from typing import AnyStr


class SigningMechanism(abc.ABC):
    @abc.abstractmethod
    async def sign(self, data_str: AnyStr) -> str:
        # NOTE: A coroutine so that signing backed by remote key storage can share the interface
        pass


class SymmetricKeySigningMechanism(SigningMechanism):
    def __init__(self, key: AnyStr) -> None:
        """
        A mechanism that signs data with a base64 encoded shared access key, such as the
        key of a device identity or of a hub shared access policy.

        :param key: Symmetric Key (base64 encoded)
        :type key: str or bytes

        :raises: ValueError if provided key is invalid
        """
        key_bytes = _to_bytes(key)
        try:
            self._signing_key = base64.b64decode(key_bytes, validate=True)
        except binascii.Error:
            raise ValueError("Invalid Symmetric Key")

    async def sign(self, data_str: AnyStr) -> str:
        """
        Sign a data string with the HMAC-SHA256 algorithm.

        :param data_str: Data string to be signed
        :type data_str: str or bytes

        :returns: The base64 encoded signature
        :rtype: str

        :raises: ValueError if an invalid data string is provided
        """
        try:
            digest = hmac.HMAC(
                key=self._signing_key, msg=_to_bytes(data_str), digestmod=hashlib.sha256
            ).digest()
        except TypeError:
            raise ValueError("Unable to sign string using the provided symmetric key")
        return base64.b64encode(digest).decode("utf-8")


def _to_bytes(value: AnyStr) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value
