# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import sys
from typing import Union, Dict, List, Tuple, Callable, Awaitable, TypeVar, Any
from typing_extensions import TypedDict, ParamSpec


P = ParamSpec("P")
T = TypeVar("T")


if sys.version_info >= (3, 10):
    FunctionOrCoroutine = Callable[P, Union[T, Awaitable[T]]]
else:
    FunctionOrCoroutine = Callable[P, Any]

# Recursive aliases need forward references (PEP484)
JSONSerializable = Union[
    Dict[str, "JSONSerializable"],
    List["JSONSerializable"],
    Tuple["JSONSerializable", ...],
    str,
    int,
    float,
    bool,
    None,
]


class DirectMethodParameters(TypedDict):
    methodName: str
    payload: JSONSerializable
    connectTimeoutInSeconds: int
    responseTimeoutInSeconds: int


class DirectMethodResult(TypedDict):
    status: int
    payload: JSONSerializable


class DeviceDescription(TypedDict, total=False):
    deviceId: str
    status: str
    authentication: Dict[str, Any]
    etag: str
