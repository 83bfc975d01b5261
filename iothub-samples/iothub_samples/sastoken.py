# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains tools for working with Shared Access Signature (SAS) Tokens"""

import logging
import time
import urllib.parse
from typing import Dict, List, Optional
from .signing_mechanism import SigningMechanism

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL: int = 3600
REQUIRED_SASTOKEN_FIELDS: List[str] = ["sr", "sig", "se"]
OPTIONAL_SASTOKEN_FIELDS: List[str] = ["skn"]
DEVICE_TOKEN_FORMAT: str = "SharedAccessSignature sr={resource}&sig={signature}&se={expiry}"
SERVICE_TOKEN_FORMAT: str = DEVICE_TOKEN_FORMAT + "&skn={key_name}"


class SasTokenError(Exception):
    """Error in SasToken"""

    pass


class SasToken:
    def __init__(self, sastoken_str: str) -> None:
        """Create a SasToken object from a SAS Token string
        :param str sastoken_str: The SAS Token string

        :raises: ValueError if SAS Token string is invalid
        """
        self._token_str: str = sastoken_str
        self._token_info: Dict[str, str] = _get_sastoken_info_from_string(sastoken_str)

    def __str__(self) -> str:
        return self._token_str

    @property
    def expiry_time(self) -> float:
        return float(self._token_info["se"])

    @property
    def resource_uri(self) -> str:
        return urllib.parse.unquote(self._token_info["sr"])

    @property
    def signature(self) -> str:
        return urllib.parse.unquote(self._token_info["sig"])

    @property
    def key_name(self) -> Optional[str]:
        """The shared access policy the token was signed with, if any"""
        return self._token_info.get("skn")

    def is_expired(self) -> bool:
        return self.expiry_time <= time.time()


class SasTokenGenerator:
    def __init__(
        self,
        signing_mechanism: SigningMechanism,
        uri: str,
        key_name: Optional[str] = None,
        ttl: int = DEFAULT_TOKEN_TTL,
    ) -> None:
        """An object that can generate SasTokens using provided values

        :param signing_mechanism: The signing mechanism that will be used to sign data
        :type signing mechanism: :class:`SigningMechanism`
        :param str uri: The URI of the resource you are generating tokens to access
        :param str key_name: Name of the shared access policy. Only used for hub (service)
            tokens. Device tokens are scoped to the device in the URI instead.
        :param int ttl: Time to live for generated tokens, in seconds (default 3600)
        """
        self.signing_mechanism = signing_mechanism
        self.uri = uri
        self.key_name = key_name
        self.ttl = ttl

    async def generate_sastoken(self) -> SasToken:
        """Generate a new SasToken

        :raises: SasTokenError if the token cannot be generated
        """
        expiry_time = int(time.time()) + self.ttl
        url_encoded_uri = urllib.parse.quote(self.uri, safe="")
        message = url_encoded_uri + "\n" + str(expiry_time)
        try:
            signature = await self.signing_mechanism.sign(message)
        except Exception as e:
            # Signing mechanisms vary, so any error could be raised here
            raise SasTokenError("Unable to generate SasToken") from e
        url_encoded_signature = urllib.parse.quote(signature, safe="")
        if self.key_name:
            token_str = SERVICE_TOKEN_FORMAT.format(
                resource=url_encoded_uri,
                signature=url_encoded_signature,
                expiry=str(expiry_time),
                key_name=urllib.parse.quote(self.key_name, safe=""),
            )
        else:
            token_str = DEVICE_TOKEN_FORMAT.format(
                resource=url_encoded_uri,
                signature=url_encoded_signature,
                expiry=str(expiry_time),
            )
        logger.debug("Generated SAS Token for {} (expires {})".format(self.uri, expiry_time))
        return SasToken(token_str)


def _get_sastoken_info_from_string(sastoken_string: str) -> Dict[str, str]:
    pieces = sastoken_string.split("SharedAccessSignature ")
    if len(pieces) != 2:
        raise ValueError("Invalid SAS Token string: Not a SAS Token ")

    try:
        sastoken_info = dict(
            [part.strip() for part in sub.split("=", 1)] for sub in pieces[1].split("&")
        )
    except ValueError as e:
        raise ValueError("Invalid SAS Token string: Incorrectly formatted") from e

    if not all(key in sastoken_info for key in REQUIRED_SASTOKEN_FIELDS):
        raise ValueError("Invalid SAS Token string: Not all required fields present")

    known_fields = REQUIRED_SASTOKEN_FIELDS + OPTIONAL_SASTOKEN_FIELDS
    if not all(key in known_fields for key in sastoken_info):
        logger.warning("Unexpected fields present in SAS Token")

    return sastoken_info
