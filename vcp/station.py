"""One virtual charge point and its WebSocket connection to the CSMS."""

import asyncio
import base64
import logging
import ssl
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from .config import BootConfig, METER_VALUES_INTERVAL_SEC
from .messages import (
    Call,
    CallError,
    CallResult,
    FramingError,
    NotConnectedError,
    UnknownMessageError,
    decode,
    encode,
)
from .ocpp_handlers import (
    OcppVersion,
    dispatch_call,
    dispatch_error,
    dispatch_result,
    resolve_catalog,
)
from .outbox import Outbox
from .state_machine import TransactionManager

logger = logging.getLogger(__name__)


@dataclass
class VCPOptions:
    charge_point_id: str
    endpoint: str
    ocpp_version: OcppVersion = OcppVersion.OCPP_1_6
    basic_auth_password: Optional[str] = None
    connectors: List[int] = field(default_factory=lambda: [1])
    boot: Optional[BootConfig] = None
    serial_number: Optional[str] = None
    meter_values_interval: float = METER_VALUES_INTERVAL_SEC


@dataclass
class ConfigurationKey:
    value: str
    readonly: bool = False


@dataclass
class DisconnectInfo:
    code: Optional[int]
    reason: str
    # True when close() was called before the transport went away
    expected: bool


# keys whose values must parse as non-negative integers
_INTEGER_KEYS = {"HeartbeatInterval", "MeterValueSampleInterval"}


def default_configuration(options: VCPOptions) -> Dict[str, ConfigurationKey]:
    return {
        "HeartbeatInterval": ConfigurationKey("0"),
        "MeterValueSampleInterval": ConfigurationKey(str(int(options.meter_values_interval))),
        "NumberOfConnectors": ConfigurationKey(str(len(options.connectors)), readonly=True),
        "AuthorizeRemoteTxRequests": ConfigurationKey("false"),
        "SupportedFeatureProfiles": ConfigurationKey("Core,RemoteTrigger", readonly=True),
    }


def _insecure_ssl_context() -> ssl.SSLContext:
    # test CSMS endpoints usually run with self-signed certificates
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class VCP:
    """A simulated charging station speaking OCPP-J over one WebSocket.

    Frames from the CSMS are handled one at a time by a single reader task,
    so handlers never run concurrently for the same station.  Everything the
    station sends goes through an ordered queue drained by a writer task;
    ``send`` and ``respond`` therefore never block.
    """

    def __init__(self, options: VCPOptions):
        self.options = options
        self.catalog = resolve_catalog(options.ocpp_version)
        self.outbox = Outbox()
        self.transactions = TransactionManager(meter_values_interval=options.meter_values_interval)
        self.configuration = default_configuration(options)

        self._ws = None
        self._queue: Optional[asyncio.Queue] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._connecting: Optional[asyncio.Task] = None
        self._closed: Optional[asyncio.Future] = None
        self._finishing = False
        self._unanswered: Set[str] = set()
        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def __repr__(self) -> str:
        return f"<VCP {self.options.charge_point_id} {self.options.ocpp_version.value}>"

    @property
    def id(self) -> str:
        return self.options.charge_point_id

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._finishing

    def update_options(self, options: VCPOptions) -> None:
        """Swap options between connections; the revision is fixed for life."""
        if options.ocpp_version != self.options.ocpp_version:
            raise ValueError("ocpp_version cannot change on an existing station")
        self.options = options
        self.transactions.meter_values_interval = options.meter_values_interval
        self.configuration["NumberOfConnectors"].value = str(len(options.connectors))

    # -------- connection --------
    async def connect(self) -> None:
        """Open the connection; concurrent callers share one attempt."""
        if self.is_connected:
            return
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._open())
        await self._connecting

    def _url(self) -> str:
        return f"{self.options.endpoint.rstrip('/')}/{self.options.charge_point_id}"

    def _headers(self) -> Optional[Dict[str, str]]:
        if not self.options.basic_auth_password:
            return None
        credentials = f"{self.options.charge_point_id}:{self.options.basic_auth_password}"
        return {"Authorization": f"Basic {base64.b64encode(credentials.encode()).decode()}"}

    async def _open(self) -> None:
        url = self._url()
        logger.info(f"Connecting to CSMS: {url} ({self.options.ocpp_version.value})")
        ws = await websockets.connect(
            url,
            subprotocols=[self.options.ocpp_version.value],
            additional_headers=self._headers(),
            ssl=_insecure_ssl_context() if url.startswith("wss://") else None,
        )
        loop = asyncio.get_running_loop()
        self._ws = ws
        self._finishing = False
        self._queue = asyncio.Queue()
        self._closed = loop.create_future()
        self._writer_task = loop.create_task(self._writer(ws, self._queue))
        self._reader_task = loop.create_task(self._reader(ws, self._queue))
        logger.info(f"Connected: id={self.id}, subprotocol={ws.subprotocol}")
        self.emit("connected")

    def close(self) -> None:
        """Start a deliberate shutdown; await :meth:`wait_closed` for the end."""
        self._finishing = True
        self._cancel_heartbeat()
        self.transactions.stop_all()
        self.transactions.release_all()
        self._unanswered.clear()
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        if self._ws is not None and self._queue is not None:
            # writer flushes what is queued, then closes the socket
            self._queue.put_nowait(None)

    async def wait_closed(self) -> Optional[DisconnectInfo]:
        if self._closed is None:
            return None
        return await asyncio.shield(self._closed)

    async def _writer(self, ws, queue: asyncio.Queue) -> None:
        while True:
            message = await queue.get()
            if message is None:
                break
            try:
                await ws.send(encode(message))
            except ConnectionClosed:
                break
        await ws.close()

    async def _reader(self, ws, queue: asyncio.Queue) -> None:
        try:
            async for raw in ws:
                try:
                    await self._handle_frame(raw)
                except Exception:
                    logger.exception(f"Unhandled error while processing frame for {self.id}")
        except ConnectionClosed:
            pass
        finally:
            self._on_closed(ws, queue)

    def _on_closed(self, ws, queue: asyncio.Queue) -> None:
        queue.put_nowait(None)
        if self._ws is not ws:
            # a newer connection already replaced this one
            return
        info = DisconnectInfo(ws.close_code, ws.close_reason or "", expected=self._finishing)
        self._cancel_heartbeat()
        self.transactions.stop_all()
        # starts still waiting on StartTransaction are abandoned with the socket
        self.transactions.release_all()
        self._unanswered.clear()
        dropped = self.outbox.clear()
        if dropped:
            logger.warning(f"Dropping {len(dropped)} unanswered request(s) for {self.id}")
        self._ws = None
        self._finishing = True
        if info.expected:
            logger.info(f"Disconnected: id={self.id}, code={info.code}")
        else:
            logger.warning(f"Disconnected (unexpected): id={self.id}, code={info.code}, reason={info.reason}")
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(info)
        self.emit("disconnected", info)

    # -------- inbound --------
    async def _handle_frame(self, raw) -> None:
        logger.info(f"Receive message ⬅️  {raw}")
        try:
            message = decode(raw)
        except FramingError as e:
            logger.error(f"Invalid frame from CSMS ({self.id}): {e}")
            self.emit("protocol_error", e)
            return

        if isinstance(message, Call):
            await dispatch_call(self, message)
        elif isinstance(message, CallResult):
            try:
                call = self.outbox.take(message.unique_id)
            except UnknownMessageError as e:
                logger.error(f"{e} ({self.id})")
                self.emit("protocol_error", e)
                return
            await dispatch_result(self, call, message)
        elif isinstance(message, CallError):
            call = self.outbox.discard(message.unique_id)
            await dispatch_error(self, call, message)

    def expect_response(self, call: Call) -> None:
        self._unanswered.add(call.unique_id)

    def is_unanswered(self, call: Call) -> bool:
        return call.unique_id in self._unanswered

    # -------- outbound --------
    def _enqueue(self, message) -> None:
        if not self.is_connected:
            raise NotConnectedError(f"{self.id} is not connected")
        self._queue.put_nowait(message)

    def send(self, call: Call) -> Call:
        """Validate ``call``, remember it for correlation and queue it."""
        if not self.is_connected:
            raise NotConnectedError(f"{self.id} is not connected")
        self.catalog.validate_outgoing(call)
        self.outbox.enqueue(call)
        logger.info(f"Sending message ➡️  {encode(call)}")
        self._enqueue(call)
        return call

    def respond(self, result: CallResult) -> None:
        self.catalog.validate_response(result)
        logger.info(f"Responding with ➡️  {encode(result)}")
        self._enqueue(result)
        self._unanswered.discard(result.unique_id)

    def respond_error(self, error: CallError) -> None:
        logger.info(f"Responding with ➡️  {encode(error)}")
        self._enqueue(error)
        self._unanswered.discard(error.unique_id)

    # -------- heartbeat --------
    def configure_heartbeat(self, interval_ms: int) -> None:
        self._cancel_heartbeat()
        if interval_ms <= 0:
            return
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop(interval_ms / 1000))

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.send(self.catalog.request("Heartbeat"))
            except NotConnectedError:
                return

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    # -------- configuration keys --------
    def set_configuration(self, key: str, value: str) -> str:
        """Store a key; returns the OCPP status ``Accepted``/``Rejected``/``NotSupported``."""
        entry = self.configuration.get(key)
        if entry is None:
            return "NotSupported"
        if entry.readonly:
            return "Rejected"
        if key in _INTEGER_KEYS:
            try:
                number = int(value)
            except ValueError:
                return "Rejected"
            if number < 0:
                return "Rejected"
            if key == "HeartbeatInterval" and self.is_connected:
                self.configure_heartbeat(number * 1000)
            elif key == "MeterValueSampleInterval" and number > 0:
                self.transactions.meter_values_interval = number
        entry.value = value
        return "Accepted"

    # -------- observers --------
    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        try:
            self._listeners[event].remove(handler)
        except ValueError:
            pass

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Listener for {event} failed ({self.id})")

    def wait_for(self, event: str) -> asyncio.Future:
        """Future resolved by the next ``event``; register before triggering it."""
        future = asyncio.get_running_loop().create_future()

        def once(*args: Any) -> None:
            self.off(event, once)
            if not future.done():
                future.set_result(args[0] if len(args) == 1 else args)

        self.on(event, once)
        future.add_done_callback(lambda _: self.off(event, once))
        return future
