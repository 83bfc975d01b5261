# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import asyncio
import functools
import logging
import paho.mqtt.client as mqtt  # type: ignore
import ssl
from typing import Any, Callable, Dict, AsyncGenerator, Optional, Union
from .config import ProxyOptions
from . import handle_exceptions


logger = logging.getLogger(__name__)


# Paho can return many rc values, but only these are expected from each operation
expected_subscribe_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN]
expected_publish_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_QUEUE_SIZE]
expected_on_connect_rc = [
    mqtt.CONNACK_ACCEPTED,
    mqtt.CONNACK_REFUSED_PROTOCOL_VERSION,
    mqtt.CONNACK_REFUSED_IDENTIFIER_REJECTED,
    mqtt.CONNACK_REFUSED_SERVER_UNAVAILABLE,
    mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD,
    mqtt.CONNACK_REFUSED_NOT_AUTHORIZED,
]
# Retrying with the same credentials cannot succeed after these
fatal_connack_rc = [
    mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD,
    mqtt.CONNACK_REFUSED_NOT_AUTHORIZED,
]


class MQTTError(Exception):
    """Represents a failure with a Paho-given error rc code"""

    def __init__(self, rc):
        self.rc = rc
        super().__init__(mqtt.error_string(rc))


class MQTTConnectionFailedError(Exception):
    """Represents a failure to connect.
    Can have a Paho-given connack rc code, or a message"""

    def __init__(self, rc=None, message=None, fatal=False):
        if not rc and not message:
            raise ValueError("must provide rc or message")
        if rc and message:
            raise ValueError("rc and message are mutually exclusive")
        self.rc = rc
        self.fatal = fatal
        if rc:
            message = mqtt.connack_string(rc)
        super().__init__(message)


class MQTTClient:
    """
    Provides an async MQTT message broker interface on top of Paho.

    Only QoS 1 is supported. Paho callbacks run on Paho's network loop thread and are handed
    over to the event loop the client was created on.

    :ivar on_mqtt_connected_handler: Called (no arguments) upon establishing a connection.
    :ivar on_mqtt_disconnected_handler: Called with the cause (an MQTTError, or None for a
        requested disconnect) upon losing a connection.
    :ivar on_mqtt_reconnect_failed_handler: Called with the error once automatic reconnection
        gives up.
    """

    def __init__(
        self,
        client_id: str,
        hostname: str,
        port: int,
        transport: str = "tcp",
        keep_alive: int = 60,
        auto_reconnect: bool = False,
        reconnect_interval: int = 10,
        ssl_context: Optional[ssl.SSLContext] = None,
        websockets_path: Optional[str] = None,
        proxy_options: Optional[ProxyOptions] = None,
    ) -> None:
        """
        :param str client_id: The id of the client connecting to the broker.
        :param str hostname: Hostname or IP address of the remote broker.
        :param int port: Network port to connect to
        :param str transport: "tcp" for TCP or "websockets" for WebSockets.
        :param int keep_alive: Number of seconds before connection timeout.
        :param bool auto_reconnect: Reconnect when a connection is unexpectedly dropped.
        :param int reconnect_interval: Number of seconds between reconnect attempts
        :param ssl_context: The SSL Context to use. If not provided will use default.
        :type ssl_context: :class:`ssl.SSLContext`
        :param str websockets_path: Path of the MQTT endpoint when using websockets.
        :param proxy_options: Options for sending traffic through proxy servers.
        :type proxy_options: :class:`ProxyOptions`
        """
        self._hostname = hostname
        self._port = port
        self._keep_alive = keep_alive
        self._auto_reconnect = auto_reconnect
        self._reconnect_interval = reconnect_interval

        self._mqtt_client = self._create_mqtt_client(
            client_id, transport, ssl_context, proxy_options, websockets_path
        )
        self._event_loop = asyncio.get_running_loop()

        # State. Only modified from code paths that cannot run in parallel.
        self._connected = False
        self._desire_connection = False

        # Synchronization
        self.connected_cond = asyncio.Condition()
        self.disconnected_cond = asyncio.Condition()
        self._connection_lock = asyncio.Lock()
        self._mid_tracker_lock = asyncio.Lock()

        # Tasks/Futures
        self._network_loop: Optional[asyncio.Future] = None
        self._reconnect_daemon: Optional[asyncio.Task] = None
        self._pending_connect: Optional[asyncio.Future] = None
        self._pending_subs: Dict[int, asyncio.Future] = {}
        self._pending_pubs: Dict[int, asyncio.Future] = {}

        # Incoming Data
        self._incoming_filtered_messages: Dict[str, asyncio.Queue] = {}

        # Event handlers
        self.on_mqtt_connected_handler: Optional[Callable[[], None]] = None
        self.on_mqtt_disconnected_handler: Optional[Callable[[Optional[MQTTError]], None]] = None
        self.on_mqtt_reconnect_failed_handler: Optional[Callable[[Exception], None]] = None

    def _create_mqtt_client(
        self,
        client_id: str,
        transport: str,
        ssl_context: Optional[ssl.SSLContext],
        proxy_options: Optional[ProxyOptions],
        websockets_path: Optional[str],
    ) -> mqtt.Client:
        """
        Create the Paho client object and assign all necessary event handler callbacks.
        """
        logger.debug("Creating Paho client")

        mqtt_client = mqtt.Client(
            client_id=client_id,
            clean_session=False,
            protocol=mqtt.MQTTv311,
            transport=transport,
            reconnect_on_failure=False,  # Reconnect is driven by the reconnect daemon
        )
        if transport == "websockets" and websockets_path:
            logger.debug("Configuring Paho client for connecting using MQTT over websockets")
            mqtt_client.ws_set_options(path=websockets_path)
        else:
            logger.debug("Configuring Paho client for connecting using MQTT over TCP")

        if proxy_options:
            logger.debug("Configuring custom proxy options on Paho client")
            mqtt_client.proxy_set(
                proxy_type=proxy_options.proxy_type_socks,
                proxy_addr=proxy_options.proxy_address,
                proxy_port=proxy_options.proxy_port,
                proxy_username=proxy_options.proxy_username,
                proxy_password=proxy_options.proxy_password,
            )

        mqtt_client.enable_logger(logging.getLogger("paho"))
        mqtt_client.tls_set_context(context=ssl_context)

        def on_connect(client: mqtt.Client, userdata: Any, flags: Dict[str, int], rc: int) -> None:
            logger.debug("Connect Response: rc {} - {}".format(rc, mqtt.connack_string(rc)))
            if rc not in expected_on_connect_rc:
                logger.warning("Connect Response rc {} was unexpected".format(rc))

            async def set_result() -> None:
                if rc == mqtt.CONNACK_ACCEPTED:
                    logger.debug("Client State: CONNECTED")
                    self._connected = True
                    self._desire_connection = True
                    async with self.connected_cond:
                        self.connected_cond.notify_all()
                    self._call_handler(self.on_mqtt_connected_handler)
                if self._pending_connect and not self._pending_connect.done():
                    self._pending_connect.set_result(rc)
                else:
                    logger.warning(
                        "Connect response received without outstanding attempt (likely was cancelled)"
                    )

            # Block Paho until the state is set, so no other Paho callback can observe stale state
            asyncio.run_coroutine_threadsafe(set_result(), self._event_loop).result()

        def on_disconnect(client: mqtt.Client, userdata: Any, rc: int) -> None:
            rc_msg = mqtt.error_string(rc)

            # Safe to read here: this and on_connect are the only writers, and both run on
            # Paho's single network loop thread
            if not self.is_connected():
                # Either a refused connect (Paho reports a disconnect too) or a double disconnect
                logger.debug("Suppressed Disconnect Response: rc {} - {}".format(rc, rc_msg))
                return

            if rc == mqtt.MQTT_ERR_SUCCESS:
                logger.debug("Disconnect Response: rc {} - {}".format(rc, rc_msg))
                cause = None
            else:
                logger.debug("Unexpected Disconnect: rc {} - {}".format(rc, rc_msg))
                cause = MQTTError(rc)

            async def set_disconnected() -> None:
                logger.debug("Client State: DISCONNECTED")
                self._connected = False
                async with self.disconnected_cond:
                    self.disconnected_cond.notify_all()
                self._call_handler(self.on_mqtt_disconnected_handler, cause)

            asyncio.run_coroutine_threadsafe(set_disconnected(), self._event_loop).result()

            # Subscribes cannot survive a disconnect. Publishes can.
            async def cancel_pending_subs() -> None:
                async with self._mid_tracker_lock:
                    if self._pending_subs:
                        logger.debug("Cancelling pending subscribes")
                    for f in self._pending_subs.values():
                        f.cancel()
                    self._pending_subs.clear()

            # Not waited on: the mid tracker lock may be held by an in-progress operation
            asyncio.run_coroutine_threadsafe(cancel_pending_subs(), self._event_loop)

        def on_subscribe(client: mqtt.Client, userdata: Any, mid: int, granted_qos: int) -> None:
            logger.debug("SUBACK received for mid {}".format(mid))
            self._complete_on_loop(self._pending_subs, mid, "SUBACK")

        def on_publish(client: mqtt.Client, userdata: Any, mid: int) -> None:
            logger.debug("PUBACK received for mid {}".format(mid))
            self._complete_on_loop(self._pending_pubs, mid, "PUBACK")

        def on_message(client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
            # Messages on topics with a filter are routed by the filter callbacks instead
            logger.warning("Dropping MQTT Message on unfiltered topic {}".format(message.topic))

        mqtt_client.on_connect = on_connect
        mqtt_client.on_disconnect = on_disconnect
        mqtt_client.on_subscribe = on_subscribe
        mqtt_client.on_publish = on_publish
        mqtt_client.on_message = on_message

        return mqtt_client

    def _complete_on_loop(self, pending: Dict[int, asyncio.Future], mid: int, ack: str) -> None:
        """Resolve the pending operation for a mid from a Paho callback"""

        async def complete() -> None:
            async with self._mid_tracker_lock:
                f = pending.get(mid)
                if f is None:
                    logger.warning("Unexpected {} received for mid {}".format(ack, mid))
                elif not f.done():
                    f.set_result(True)

        # Not waited on: the operation awaiting this ack holds the mid tracker lock until its
        # Future is registered, so waiting here would deadlock Paho's network loop
        asyncio.run_coroutine_threadsafe(complete(), self._event_loop)

    def _call_handler(self, handler: Optional[Callable[..., None]], *args: Any) -> None:
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            handle_exceptions.handle_background_exception(e, "MQTT event handler")

    async def _reconnect_loop(self) -> None:
        logger.debug("Reconnect Daemon starting...")
        try:
            while True:
                async with self.disconnected_cond:
                    await self.disconnected_cond.wait_for(
                        lambda: not self.is_connected() and self._desire_connection
                    )
                try:
                    logger.debug("Reconnect Daemon attempting to reconnect...")
                    await self.connect()
                    logger.debug("Reconnect Daemon reconnect attempt succeeded")
                except MQTTConnectionFailedError as e:
                    if not e.fatal:
                        logger.debug(
                            "Reconnect attempt failed. Trying again in {} seconds".format(
                                self._reconnect_interval
                            )
                        )
                        await asyncio.sleep(self._reconnect_interval)
                    else:
                        logger.error("Reconnect failure was fatal - cannot reconnect: {}".format(e))
                        self._desire_connection = False
                        self._call_handler(self.on_mqtt_reconnect_failed_handler, e)
                        break
        except asyncio.CancelledError:
            logger.debug("Reconnect Daemon was cancelled")
            raise

    def _network_loop_running(self) -> bool:
        return self._network_loop is not None and not self._network_loop.done()

    def is_connected(self) -> bool:
        """
        Returns a boolean indicating whether the MQTT client is currently connected.

        Only accurate as of the time it returns.
        """
        return self._connected

    def set_credentials(self, username: str, password: Optional[str] = None) -> None:
        """
        Set a username and optionally a password for broker authentication.

        Takes effect on the next connect.
        """
        self._mqtt_client.username_pw_set(username=username, password=password)

    def add_incoming_message_filter(self, topic: str) -> None:
        """
        Route incoming messages matching a topic (wildcards allowed) to their own queue.

        :raises: ValueError if a filter is already applied for the topic
        """
        if topic in self._incoming_filtered_messages:
            raise ValueError("Filter already applied for this topic")

        queue: asyncio.Queue = asyncio.Queue()
        self._incoming_filtered_messages[topic] = queue

        def callback(client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
            logger.debug("Incoming MQTT Message received on filter {}".format(message.topic))
            self._event_loop.call_soon_threadsafe(queue.put_nowait, message)

        self._mqtt_client.message_callback_add(topic, callback)

    def get_incoming_message_generator(
        self, filter_topic: str
    ) -> AsyncGenerator[mqtt.MQTTMessage, None]:
        """
        Return a generator that yields incoming messages received on a filter

        :raises: ValueError if a filter is not already applied for the given topic
        """
        if filter_topic not in self._incoming_filtered_messages:
            raise ValueError("No filter applied for given topic")
        incoming_messages = self._incoming_filtered_messages[filter_topic]

        async def message_generator() -> AsyncGenerator[mqtt.MQTTMessage, None]:
            while True:
                yield await incoming_messages.get()

        return message_generator()

    async def connect(self) -> None:
        """
        Connect to the MQTT broker using details set at instantiation.

        :raises: MQTTConnectionFailedError if there is a failure connecting
        """
        async with self._connection_lock:
            # Only this method invokes Paho's connect, under the connection lock, so the
            # connection state cannot change underneath this block
            if self.is_connected():
                logger.debug("Already connected!")
                return

            # A cancelled connect only cancels a reconnect daemon it started itself
            if self._auto_reconnect and not self._reconnect_daemon:
                self._reconnect_daemon = asyncio.create_task(self._reconnect_loop())
                reconnect_started_on_this_attempt = True
            else:
                reconnect_started_on_this_attempt = False

            try:
                await self._do_connect()
            except asyncio.CancelledError:
                logger.debug("Connect attempt was cancelled")
                logger.warning("The cancelled connect attempt may still complete (in-flight)")
                if self._reconnect_daemon and reconnect_started_on_this_attempt:
                    logger.debug("Cancelling reconnect daemon started by this attempt")
                    self._reconnect_daemon.cancel()
                    self._reconnect_daemon = None
                raise
            finally:
                self._pending_connect = None

    async def _do_connect(self) -> None:
        """Connect, start network loop, and wait for response"""
        self._pending_connect = self._event_loop.create_future()

        logger.debug("Attempting connect using port {}...".format(self._port))
        try:
            rc = await self._event_loop.run_in_executor(
                None,
                functools.partial(
                    self._mqtt_client.connect,
                    host=self._hostname,
                    port=self._port,
                    keepalive=self._keep_alive,
                ),
            )
            logger.debug("Connect returned rc {} - {}".format(rc, mqtt.error_string(rc)))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise MQTTConnectionFailedError(message="Failure in Paho .connect()") from e

        if rc != mqtt.MQTT_ERR_SUCCESS:
            # Paho's .connect() should only ever return success or raise
            logger.warning("Unexpected rc {} from Paho .connect()".format(rc))
            cause = MQTTError(rc)
            raise MQTTConnectionFailedError(message="Unexpected Paho .connect() rc") from cause

        # loop_forever() requires an established socket, so it is started after connecting.
        # It ends on disconnect, on a dropped connection, or on a refused connect. A loop left
        # over from a cancelled attempt is reused.
        if not self._network_loop_running():
            logger.debug("Starting Paho network loop")
            self._network_loop = self._event_loop.run_in_executor(
                None, self._mqtt_client.loop_forever
            )
        else:
            logger.debug("Paho network loop was already running")

        logger.debug("Waiting for connect response...")
        rc = await self._pending_connect
        if rc != mqtt.CONNACK_ACCEPTED:
            # A refused connect stops the network loop shortly after
            if self._network_loop is not None:
                logger.debug("Waiting for network loop to exit and clearing task")
                await self._network_loop
                self._network_loop = None
            raise MQTTConnectionFailedError(rc=rc, fatal=rc in fatal_connack_rc)

    async def disconnect(self) -> None:
        """
        Disconnect from the MQTT broker.

        Ensure this is called for graceful exit.
        """
        async with self._connection_lock:
            self._desire_connection = False

            if self._reconnect_daemon:
                logger.debug("Cancelling reconnect daemon")
                self._reconnect_daemon.cancel()
                self._reconnect_daemon = None

            # A network loop (running or not) means Paho still needs to be told to disconnect
            if not self._network_loop:
                logger.debug("Already disconnected!")
                return

            logger.debug("Attempting disconnect")
            rc = await self._event_loop.run_in_executor(None, self._mqtt_client.disconnect)
            logger.debug("Disconnect returned rc {} - {}".format(rc, mqtt.error_string(rc)))

            if rc == mqtt.MQTT_ERR_SUCCESS:
                logger.debug("Waiting for disconnect to complete...")
                async with self.disconnected_cond:
                    await self.disconnected_cond.wait_for(lambda: not self.is_connected())
                logger.debug("Waiting for network loop to exit and clearing task")
                await self._network_loop
                self._network_loop = None
                # Let tasks scheduled by the on_disconnect callback finish
                await asyncio.sleep(0.02)
            elif rc == mqtt.MQTT_ERR_NO_CONN:
                # Connection already lost, but Paho still wanted to be connected
                logger.debug("Early disconnect return (Already disconnected)")
                self._network_loop = None
            else:
                logger.warning("Unexpected rc {} from Paho .disconnect()".format(rc))

    async def subscribe(self, topic: str) -> None:
        """
        Subscribe to a topic from the MQTT broker.

        :raises: MQTTError if there is an error subscribing
        """
        mid = None
        try:
            logger.debug("Attempting subscribe to {}".format(topic))
            # Holding the lock keeps on_subscribe from resolving before the Future exists
            async with self._mid_tracker_lock:
                (rc, mid) = await self._event_loop.run_in_executor(
                    None, functools.partial(self._mqtt_client.subscribe, topic=topic, qos=1)
                )
                logger.debug("Subscribe returned rc {} - {}".format(rc, mqtt.error_string(rc)))
                if rc != mqtt.MQTT_ERR_SUCCESS:
                    if rc not in expected_subscribe_rc:
                        logger.warning("Unexpected rc {} from Paho .subscribe()".format(rc))
                    raise MQTTError(rc)
                sub_done = self._event_loop.create_future()
                self._pending_subs[mid] = sub_done

            logger.debug("Waiting for subscribe response for mid {}".format(mid))
            await sub_done
        except asyncio.CancelledError:
            logger.debug("Subscribe (mid {}) was cancelled".format(mid))
            raise
        finally:
            async with self._mid_tracker_lock:
                if mid is not None:
                    self._pending_subs.pop(mid, None)

    async def publish(self, topic: str, payload: Union[str, bytes, None]) -> None:
        """
        Send a message via the MQTT broker.

        Publishes made while disconnected are queued by Paho and delivered upon reconnect.

        :raises: ValueError if topic is invalid or the payload is too large
        :raises: TypeError if payload is not a valid type
        :raises: MQTTError if there is an error publishing
        """
        mid = None
        try:
            logger.debug("Attempting publish to {}".format(topic))
            # Holding the lock keeps on_publish from resolving before the Future exists
            async with self._mid_tracker_lock:
                message_info = await self._event_loop.run_in_executor(
                    None,
                    functools.partial(
                        self._mqtt_client.publish, topic=topic, payload=payload, qos=1
                    ),
                )
                mid = message_info.mid
                rc = message_info.rc
                logger.debug("Publish returned rc {} - {}".format(rc, mqtt.error_string(rc)))
                if rc == mqtt.MQTT_ERR_NO_CONN:
                    logger.debug("MQTT Client not connected - will publish upon next connect")
                elif rc != mqtt.MQTT_ERR_SUCCESS:
                    if rc not in expected_publish_rc:
                        logger.warning("Unexpected rc {} from Paho .publish()".format(rc))
                    raise MQTTError(rc)
                pub_done = self._event_loop.create_future()
                self._pending_pubs[mid] = pub_done

            # message_info.wait_for_publish() raises on disconnect even though the publish
            # survives it, so completion is tracked through on_publish instead
            logger.debug("Waiting for publish response for mid {}".format(mid))
            await pub_done
        except asyncio.CancelledError:
            logger.debug("Publish (mid {}) was cancelled".format(mid))
            if mid is not None:
                logger.warning("The cancelled publish may still be delivered if it was in-flight")
            raise
        finally:
            async with self._mid_tracker_lock:
                if mid is not None:
                    self._pending_pubs.pop(mid, None)
