# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Command line interface for the IoT Hub samples.

Exit status is 0 when a sample ran (including when no stream request arrived, or the stream
handshake was aborted and logged), 1 when the configuration was invalid or the startup failed,
and 2 when the arguments could not be parsed.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Awaitable, List, Optional, TypeVar
from . import config, constant
from . import connection_string as cs
from .device_client import IoTHubDeviceClient
from .exceptions import IoTHubError, RequestFailedError, RequestTimeoutError, TransportError
from .method_responder import MethodResponder
from .mqtt_client import MQTTConnectionFailedError, MQTTError
from .registry_manager import RegistryManager
from .sample_device import SampleDevice
from .sastoken import SasTokenError
from .service_client import IoTHubServiceClient
from .stream_negotiator import StreamNegotiator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s> %(levelname)s %(name)s: %(message)s"

EXIT_OK = 0
EXIT_FAILURE = 1

_T = TypeVar("_T")

# Failures while connecting the device client at startup
CONNECT_ERRORS = (MQTTConnectionFailedError, MQTTError, SasTokenError, OSError)


def _json_arg(value: str):
    try:
        return json.loads(value)
    except ValueError:
        raise argparse.ArgumentTypeError("invalid JSON: {}".format(value))


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError("invalid number: {}".format(value))
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0: {}".format(value))
    return number


def _non_negative_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError("invalid number: {}".format(value))
    if number < 0:
        raise argparse.ArgumentTypeError("cannot be negative: {}".format(value))
    return number


def _add_iothub_connection_string(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-i",
        "--iothub-connection-string",
        required=True,
        help="The connection string of a shared access policy of the IoT Hub",
    )


def _add_device_connection_string(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-d",
        "--device-connection-string",
        required=True,
        help="The connection string of the device to simulate",
    )
    parser.add_argument(
        "-t",
        "--transport-type",
        choices=[t.value for t in config.TransportType],
        default=config.TransportType.MQTT.value,
        help="The transport used by the device. Only mqtt and mqtt_ws are implemented.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iothub-samples", description="IoT Hub device stream and direct method samples."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    stream_parser = subparsers.add_parser(
        "stream", help="Negotiate a device stream and echo a message through it"
    )
    _add_iothub_connection_string(stream_parser)
    _add_device_connection_string(stream_parser)
    stream_parser.add_argument(
        "--timeout",
        type=_positive_float,
        default=constant.DEFAULT_NEGOTIATION_TIMEOUT,
        help="Seconds allowed for the whole negotiation (default: %(default)s)",
    )
    stream_parser.add_argument(
        "--stream-name",
        default=constant.DEFAULT_STREAM_NAME,
        help="Name of the requested stream (default: %(default)s)",
    )

    methods_parser = subparsers.add_parser(
        "methods", help="Answer the WriteToConsole and GetDeviceName methods on a device"
    )
    _add_device_connection_string(methods_parser)
    methods_parser.add_argument(
        "--wait-time",
        type=_non_negative_float,
        default=constant.DEFAULT_WAIT_TIME,
        help="Seconds to wait for method invocations (default: %(default)s)",
    )
    methods_parser.add_argument(
        "--handler-delay",
        type=_non_negative_float,
        default=constant.DEFAULT_HANDLER_DELAY,
        help="Seconds each method handler sleeps before responding (default: %(default)s)",
    )

    invoke_parser = subparsers.add_parser("invoke", help="Invoke a method on a device")
    _add_iothub_connection_string(invoke_parser)
    invoke_parser.add_argument("--device-id", required=True, help="The target device ID")
    invoke_parser.add_argument("--method-name", required=True, help="Name of the method")
    invoke_parser.add_argument(
        "--payload", type=_json_arg, default=None, help="JSON payload sent with the invocation"
    )

    device_parser = subparsers.add_parser("device", help="Manage sample device identities")
    device_subparsers = device_parser.add_subparsers(dest="device_command", metavar="ACTION")
    device_subparsers.required = True
    create_parser = device_subparsers.add_parser("create", help="Create a sample device")
    _add_iothub_connection_string(create_parser)
    create_parser.add_argument(
        "--prefix", default="sample-device-", help="Prefix of the device ID (default: %(default)s)"
    )
    remove_parser = device_subparsers.add_parser("remove", help="Remove a device")
    _add_iothub_connection_string(remove_parser)
    remove_parser.add_argument("--device-id", required=True, help="The device ID to remove")

    return parser


async def _until_stopped(aw: Awaitable[_T], stop_event: asyncio.Event) -> Optional[_T]:
    """Await aw, cancelling it if the stop event is set first. Returns None if cancelled."""
    task = asyncio.ensure_future(aw)
    stop_task = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait([task, stop_task], return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
    if not task.done():
        logger.info("Sample execution cancellation requested; will exit.")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return None
    return task.result()


async def run_stream(args: argparse.Namespace, stop_event: asyncio.Event) -> int:
    try:
        device_id = cs.ConnectionString(args.device_connection_string)[cs.DEVICE_ID]
        negotiation_config = config.NegotiationConfig(
            device_id=device_id, stream_name=args.stream_name, timeout=args.timeout
        )
        device_client = IoTHubDeviceClient.create_from_connection_string(
            args.device_connection_string, transport_type=args.transport_type
        )
    except (ValueError, TypeError, KeyError) as e:
        logger.error("Invalid configuration: {}".format(e))
        return EXIT_FAILURE
    try:
        service_client = IoTHubServiceClient.create_from_connection_string(
            args.iothub_connection_string
        )
    except (ValueError, TypeError) as e:
        logger.error("Invalid configuration: {}".format(e))
        await device_client.shutdown()
        return EXIT_FAILURE

    logger.debug("Using deviceId={}, transport={}".format(device_id, args.transport_type))
    try:
        try:
            await device_client.connect()
        except CONNECT_ERRORS as e:
            logger.error("Device {} failed to connect: {}".format(device_id, e))
            return EXIT_FAILURE

        negotiator = StreamNegotiator(device_client, service_client, negotiation_config)
        try:
            await _until_stopped(negotiator.run(), stop_event)
        except (RequestFailedError, RequestTimeoutError, TransportError) as e:
            logger.error("Stream negotiation with device {} aborted: {}".format(device_id, e))
        print("Done.")
        return EXIT_OK
    finally:
        await asyncio.gather(
            device_client.shutdown(), service_client.shutdown(), return_exceptions=True
        )


async def run_methods(args: argparse.Namespace, stop_event: asyncio.Event) -> int:
    try:
        responder_config = config.ResponderConfig(
            handler_delay=args.handler_delay, wait_time=args.wait_time
        )
        device_client = IoTHubDeviceClient.create_from_connection_string(
            args.device_connection_string, transport_type=args.transport_type
        )
    except (ValueError, TypeError) as e:
        logger.error("Invalid configuration: {}".format(e))
        return EXIT_FAILURE

    responder = MethodResponder(device_client, responder_config)
    try:
        await responder.register_handlers()
        try:
            await device_client.connect()
        except CONNECT_ERRORS as e:
            logger.error("Device failed to connect: {}".format(e))
            return EXIT_FAILURE
        logger.info("Press Control+C to quit the sample.")
        await responder.run(stop_event)
        print("Done.")
        return EXIT_OK
    finally:
        await device_client.shutdown()


async def run_invoke(args: argparse.Namespace) -> int:
    try:
        service_client = IoTHubServiceClient.create_from_connection_string(
            args.iothub_connection_string
        )
    except (ValueError, TypeError) as e:
        logger.error("Invalid configuration: {}".format(e))
        return EXIT_FAILURE
    try:
        result = await service_client.invoke_device_method(
            args.device_id, args.method_name, args.payload
        )
    except IoTHubError as e:
        logger.error("Invoking method '{}' failed: {}".format(args.method_name, e))
        return EXIT_FAILURE
    finally:
        await service_client.shutdown()
    print(json.dumps(result))
    return EXIT_OK


async def run_device(args: argparse.Namespace) -> int:
    try:
        registry = RegistryManager.create_from_connection_string(args.iothub_connection_string)
    except (ValueError, TypeError) as e:
        logger.error("Invalid configuration: {}".format(e))
        return EXIT_FAILURE
    try:
        if args.device_command == "create":
            sample_device = await SampleDevice.create(registry, args.prefix)
            print(sample_device.connection_string)
        else:
            await registry.remove_device(args.device_id)
    except IoTHubError as e:
        logger.error("Device {} failed: {}".format(args.device_command, e))
        return EXIT_FAILURE
    finally:
        await registry.shutdown()
    return EXIT_OK


async def run(args: argparse.Namespace) -> int:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def interrupt_handler(signum, frame):
        # Runs outside of the event loop, which must be woken to see the event
        loop.call_soon_threadsafe(stop_event.set)

    previous_handler = signal.signal(signal.SIGINT, interrupt_handler)
    try:
        if args.command == "stream":
            return await run_stream(args, stop_event)
        elif args.command == "methods":
            return await run_methods(args, stop_event)
        elif args.command == "invoke":
            return await run_invoke(args)
        else:
            return await run_device(args)
    finally:
        signal.signal(signal.SIGINT, previous_handler)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT
    )
    if not args.verbose:
        # paho is chatty at INFO
        logging.getLogger("paho").setLevel(logging.WARNING)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
