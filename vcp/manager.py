"""Fleet of virtual charge points and their lifecycle."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import (
    METER_VALUES_INTERVAL_SEC,
    BootConfig,
    CamelModel,
    ResolvedConfig,
    StationConfig,
    StationUpdate,
)
from .ocpp_handlers import build_request
from .station import VCP, DisconnectInfo, VCPOptions

logger = logging.getLogger(__name__)


class LifecycleStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    ERROR = "error"
    STOPPED = "stopped"


class StationExistsError(Exception):
    def __init__(self, station_id: str):
        super().__init__(f"VCP {station_id} already exists")
        self.station_id = station_id


class StationNotFoundError(Exception):
    def __init__(self, station_id: str):
        super().__init__(f"VCP {station_id} not found")
        self.station_id = station_id


class BootTimeoutError(Exception):
    pass


class StationSnapshot(CamelModel):
    id: str
    ocpp_version: str
    endpoint: str
    metadata: Dict[str, Any]
    status: LifecycleStatus
    auto_boot: Optional[BootConfig] = None
    created_at: datetime
    last_connected_at: Optional[datetime] = None
    last_boot_accepted_at: Optional[datetime] = None
    error: Optional[str] = None
    charge_point_serial_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class SendActionResult(CamelModel):
    message_id: str
    action: str
    payload: Dict[str, Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ManagedStation:
    config: StationConfig
    vcp: VCP
    status: LifecycleStatus = LifecycleStatus.IDLE
    created_at: datetime = field(default_factory=_now)
    last_connected_at: Optional[datetime] = None
    last_boot_accepted_at: Optional[datetime] = None
    last_error: Optional[str] = None
    connect_task: Optional[asyncio.Task] = None
    booting: bool = False
    listeners: List[Tuple[str, Callable[..., Any]]] = field(default_factory=list)


def station_options(config: StationConfig) -> VCPOptions:
    boot = config.auto_boot
    return VCPOptions(
        charge_point_id=config.id,
        endpoint=config.endpoint,
        ocpp_version=config.ocpp_version,
        basic_auth_password=config.basic_auth_password,
        connectors=list(boot.connectors) if boot else [1],
        boot=boot,
        serial_number=config.charge_point_serial_number,
        meter_values_interval=METER_VALUES_INTERVAL_SEC,
    )


class VcpManager:
    """Registry of stations keyed by charge point id.

    All lifecycle changes go through here.  Mutations for one id are
    serialized: a second ``connect_by_id`` while one is running waits for the
    first instead of opening another socket.
    """

    def __init__(self, config: Optional[ResolvedConfig] = None):
        self.config = config or ResolvedConfig()
        self._stations: Dict[str, ManagedStation] = {}

    # -------- queries --------
    def list(self) -> List[StationSnapshot]:
        return [self._snapshot(record) for record in self._stations.values()]

    def get_snapshot(self, station_id: str) -> Optional[StationSnapshot]:
        record = self._stations.get(station_id)
        return self._snapshot(record) if record is not None else None

    def get_config(self, station_id: str) -> StationConfig:
        return self._require(station_id).config.model_copy(deep=True)

    def get_station(self, station_id: str) -> VCP:
        return self._require(station_id).vcp

    def __contains__(self, station_id: str) -> bool:
        return station_id in self._stations

    # -------- lifecycle --------
    async def seed(self) -> None:
        """Create (and connect) every station from the startup config."""
        configs = list(self.config.vcps)
        results = await asyncio.gather(*(self.create(config) for config in configs), return_exceptions=True)
        for config, result in zip(configs, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to start VCP {config.id}: {result!r}")

    async def create(
        self,
        config: StationConfig,
        auto_connect: bool = True,
        auto_boot: Optional[BootConfig] = None,
    ) -> StationSnapshot:
        if config.id in self._stations:
            raise StationExistsError(config.id)
        if auto_boot is not None:
            config = config.model_copy(update={"auto_boot": auto_boot})
        record = ManagedStation(config=config, vcp=VCP(station_options(config)))
        self._stations[config.id] = record
        self._attach(record)
        logger.info(f"VCP {config.id} created ({config.ocpp_version.value} -> {config.endpoint})")
        if auto_connect:
            await self.connect_by_id(config.id)
        return self._snapshot(record)

    async def connect_by_id(self, station_id: str, auto_boot: Optional[BootConfig] = None) -> StationSnapshot:
        record = self._require(station_id)
        if auto_boot is not None:
            record.config = record.config.model_copy(update={"auto_boot": auto_boot})

        task = record.connect_task
        if task is None or task.done():
            if record.vcp.is_connected:
                return self._snapshot(record)
            task = record.connect_task = asyncio.ensure_future(self._connect(record))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.info(f"Connect of VCP {station_id} was cancelled")
        return self._snapshot(record)

    async def _connect(self, record: ManagedStation) -> None:
        vcp = record.vcp
        vcp.update_options(station_options(record.config))
        record.last_error = None
        self._set_status(record, LifecycleStatus.CONNECTING)
        try:
            await vcp.connect()
        except Exception as e:
            record.last_error = str(e) or type(e).__name__
            self._set_status(record, LifecycleStatus.ERROR)
            raise
        record.last_connected_at = _now()
        self._set_status(record, LifecycleStatus.CONNECTED)

        boot = record.config.auto_boot
        if boot is None or not boot.enabled:
            self._set_status(record, LifecycleStatus.READY)
            return
        try:
            await self._bootstrap(record, boot)
        except Exception as e:
            if record.status != LifecycleStatus.ERROR:
                record.last_error = str(e) or type(e).__name__
                self._set_status(record, LifecycleStatus.ERROR)
            raise

    async def _bootstrap(self, record: ManagedStation, boot: BootConfig) -> None:
        vcp = record.vcp
        catalog = vcp.catalog
        self._set_status(record, LifecycleStatus.BOOTSTRAPPING)
        record.booting = True
        # waiters go in before the request so a fast answer is not missed
        accepted = vcp.wait_for("BootNotificationAccepted")
        closed = vcp.wait_for("disconnected")
        try:
            vcp.send(catalog.build_boot(vcp.id, boot, record.config.charge_point_serial_number))
            done, _ = await asyncio.wait(
                {accepted, closed},
                timeout=boot.boot_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if accepted not in done:
                if closed in done:
                    raise ConnectionError("connection closed before BootNotification was accepted")
                raise BootTimeoutError(f"BootNotification not accepted within {boot.boot_timeout}s")
            for connector_id in catalog.status_connectors(boot.connectors):
                vcp.send(catalog.build_status(connector_id, catalog.connector_status.available))
        finally:
            record.booting = False
            accepted.cancel()
            closed.cancel()
        self._set_status(record, LifecycleStatus.READY)

    async def stop(self, station_id: str) -> StationSnapshot:
        record = self._require(station_id)
        task = record.connect_task
        if task is not None and not task.done():
            task.cancel()
        record.vcp.close()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        await record.vcp.wait_closed()
        self._set_status(record, LifecycleStatus.STOPPED)
        return self._snapshot(record)

    async def remove(self, station_id: str) -> None:
        record = self._require(station_id)
        try:
            await self.stop(station_id)
        except Exception:
            logger.exception(f"Failed to stop VCP {station_id} before removal")
        for event, handler in record.listeners:
            record.vcp.off(event, handler)
        record.listeners.clear()
        self._stations.pop(station_id, None)
        logger.info(f"VCP {station_id} removed")

    def update(self, station_id: str, patch: StationUpdate) -> StationSnapshot:
        """Change a station's settings; they take effect on the next connect."""
        record = self._require(station_id)
        changes = patch.model_dump(exclude_unset=True, exclude_none=True, exclude={"auto_boot", "basic_auth_password"})
        if "basic_auth_password" in patch.model_fields_set:
            # an explicit null or empty string removes the credential
            changes["basic_auth_password"] = patch.basic_auth_password or None
        config = record.config.model_copy(update=changes)
        if patch.auto_boot is not None:
            config.auto_boot = (record.config.auto_boot or BootConfig()).merged(patch.auto_boot)
        record.config = config
        logger.info(f"VCP {station_id} updated: {sorted(patch.model_dump(exclude_unset=True))}")
        return self._snapshot(record)

    def send_action(self, station_id: str, action: str, payload: Optional[Dict[str, Any]] = None) -> SendActionResult:
        """Send an arbitrary outbound action; the CSMS answer is handled asynchronously."""
        vcp = self._require(station_id).vcp
        call = vcp.send(build_request(vcp.options.ocpp_version, action, payload))
        return SendActionResult(message_id=call.unique_id, action=call.action, payload=call.payload)

    async def shutdown(self) -> None:
        station_ids = list(self._stations)
        results = await asyncio.gather(*(self.stop(station_id) for station_id in station_ids), return_exceptions=True)
        for station_id, result in zip(station_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to stop VCP {station_id}: {result!r}")

    # -------- internals --------
    def _require(self, station_id: str) -> ManagedStation:
        record = self._stations.get(station_id)
        if record is None:
            raise StationNotFoundError(station_id)
        return record

    def _attach(self, record: ManagedStation) -> None:
        def on_disconnected(info: DisconnectInfo) -> None:
            if info.expected:
                return
            record.last_error = f"disconnected (unexpected) code={info.code} reason={info.reason}"
            self._set_status(record, LifecycleStatus.ERROR)

        def on_boot_accepted(conf: Any) -> None:
            record.last_boot_accepted_at = _now()
            # manual BootNotification sent through send_action
            if not record.booting and record.status in (LifecycleStatus.CONNECTED, LifecycleStatus.ERROR):
                self._set_status(record, LifecycleStatus.READY)

        for event, handler in (("disconnected", on_disconnected), ("BootNotificationAccepted", on_boot_accepted)):
            record.vcp.on(event, handler)
            record.listeners.append((event, handler))

    def _set_status(self, record: ManagedStation, status: LifecycleStatus) -> None:
        previous = record.status
        record.status = status
        message = f"VCP {record.config.id}: {previous.value} -> {status.value}"
        if record.last_error and status == LifecycleStatus.ERROR:
            message += f" (last error: {record.last_error})"
            logger.warning(message)
        else:
            logger.info(message)

    def _snapshot(self, record: ManagedStation) -> StationSnapshot:
        config = record.config
        return StationSnapshot(
            id=config.id,
            ocpp_version=config.ocpp_version.value,
            endpoint=config.endpoint,
            metadata=dict(config.metadata),
            status=record.status,
            auto_boot=config.auto_boot,
            created_at=record.created_at,
            last_connected_at=record.last_connected_at,
            last_boot_accepted_at=record.last_boot_accepted_at,
            error=record.last_error,
            charge_point_serial_number=config.charge_point_serial_number,
        )
