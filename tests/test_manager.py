import asyncio

import pytest

from csms import wait_until
from vcp.config import BootConfig, BootPatch, ResolvedConfig, StationConfig, StationUpdate
from vcp.manager import (
    BootTimeoutError,
    LifecycleStatus,
    StationExistsError,
    StationNotFoundError,
    VcpManager,
)
from vcp.messages import NotConnectedError, PayloadValidationError, UnsupportedActionError
from vcp.ocpp_handlers import OcppVersion


def station_config(cp_id: str, endpoint: str, **kwargs) -> StationConfig:
    return StationConfig(id=cp_id, endpoint=endpoint, **kwargs)


@pytest.mark.asyncio
async def test_duplicate_id_rejected(manager):
    await manager.create(station_config("CP-1", "ws://unused"), auto_connect=False)
    with pytest.raises(StationExistsError):
        await manager.create(station_config("CP-1", "ws://other"), auto_connect=False)
    [snapshot] = manager.list()
    assert snapshot.endpoint == "ws://unused"
    assert snapshot.status is LifecycleStatus.IDLE


@pytest.mark.asyncio
async def test_unknown_id(manager):
    assert manager.get_snapshot("nope") is None
    with pytest.raises(StationNotFoundError):
        await manager.connect_by_id("nope")


@pytest.mark.asyncio
async def test_auto_boot_reaches_ready(csms, manager):
    boot = BootConfig(charge_point_vendor="ACME", connectors=[1, 2])
    snapshot = await manager.create(
        station_config("CP-1", csms.url, auto_boot=boot, charge_point_serial_number="SN-1")
    )
    assert snapshot.status is LifecycleStatus.READY
    assert snapshot.last_boot_accepted_at is not None
    assert snapshot.last_connected_at is not None

    boot_request = await csms.next("BootNotification")
    assert boot_request["chargePointVendor"] == "ACME"
    assert boot_request["chargePointSerialNumber"] == "SN-1"
    statuses = [await csms.next("StatusNotification") for _ in range(3)]
    assert [s["connectorId"] for s in statuses] == [0, 1, 2]
    assert {s["status"] for s in statuses} == {"Available"}
    assert csms.actions("CP-1")[:4] == ["BootNotification"] + ["StatusNotification"] * 3


@pytest.mark.asyncio
async def test_auto_boot_201_skips_connector_zero(csms, manager):
    config = station_config("CS-1", csms.url, ocpp_version=OcppVersion.OCPP_2_0_1, auto_boot=BootConfig())
    snapshot = await manager.create(config)
    assert snapshot.status is LifecycleStatus.READY
    boot_request = await csms.next("BootNotification")
    assert boot_request["reason"] == "PowerUp"
    assert boot_request["chargingStation"]["serialNumber"] == "CS-1"
    status = await csms.next("StatusNotification")
    assert (status["evseId"], status["connectorStatus"]) == (1, "Available")
    assert csms.queue("StatusNotification").empty()


@pytest.mark.asyncio
async def test_disabled_auto_boot_is_ready_without_boot(csms, manager):
    config = station_config("CP-1", csms.url, auto_boot=BootConfig(enabled=False))
    snapshot = await manager.create(config)
    assert snapshot.status is LifecycleStatus.READY
    assert csms.queue("BootNotification").empty()


@pytest.mark.asyncio
async def test_boot_timeout_moves_to_error(csms, manager):
    csms.boot_status = "Rejected"
    config = station_config("CP-1", csms.url, auto_boot=BootConfig(boot_timeout=0.2))
    with pytest.raises(BootTimeoutError):
        await manager.create(config)
    snapshot = manager.get_snapshot("CP-1")
    assert snapshot.status is LifecycleStatus.ERROR
    assert "not accepted" in snapshot.error


@pytest.mark.asyncio
async def test_unexpected_disconnect_moves_to_error(csms, manager):
    await manager.create(station_config("CP-1", csms.url, auto_boot=BootConfig(enabled=False)))
    await csms.disconnect("CP-1", code=1011, reason="boom")
    await wait_until(lambda: manager.get_snapshot("CP-1").status is LifecycleStatus.ERROR)
    assert manager.get_snapshot("CP-1").error == "disconnected (unexpected) code=1011 reason=boom"


@pytest.mark.asyncio
async def test_connect_failure_is_reported(manager):
    await manager.create(station_config("CP-1", "ws://127.0.0.1:1"), auto_connect=False)
    with pytest.raises(OSError):
        await manager.connect_by_id("CP-1")
    snapshot = manager.get_snapshot("CP-1")
    assert snapshot.status is LifecycleStatus.ERROR
    assert snapshot.error


@pytest.mark.asyncio
async def test_concurrent_connects_share_attempt(csms, manager):
    await manager.create(station_config("CP-1", csms.url, auto_boot=BootConfig()), auto_connect=False)
    first, second = await asyncio.gather(manager.connect_by_id("CP-1"), manager.connect_by_id("CP-1"))
    assert first.status is second.status is LifecycleStatus.READY
    assert csms.connection_count["CP-1"] == 1
    await csms.next("BootNotification")
    assert csms.queue("BootNotification").empty()


@pytest.mark.asyncio
async def test_stop_then_send_action_fails(csms, manager):
    await manager.create(station_config("CP-1", csms.url))
    snapshot = await manager.stop("CP-1")
    assert snapshot.status is LifecycleStatus.STOPPED
    assert snapshot.error is None
    with pytest.raises(NotConnectedError):
        manager.send_action("CP-1", "Heartbeat", {})


@pytest.mark.asyncio
async def test_stop_cancels_pending_boot(csms, manager):
    csms.replies["BootNotification"] = None
    await manager.create(station_config("CP-1", csms.url, auto_boot=BootConfig()), auto_connect=False)
    connecting = asyncio.ensure_future(manager.connect_by_id("CP-1"))
    await wait_until(lambda: manager.get_snapshot("CP-1").status is LifecycleStatus.BOOTSTRAPPING)
    await manager.stop("CP-1")
    # the cancelled connect returns instead of raising
    await asyncio.wait_for(connecting, timeout=5)
    assert manager.get_snapshot("CP-1").status is LifecycleStatus.STOPPED
    assert csms.queue("StatusNotification").empty()


@pytest.mark.asyncio
async def test_send_action(csms, manager):
    await manager.create(station_config("CP-1", csms.url, auto_boot=BootConfig(enabled=False)))
    result = manager.send_action("CP-1", "Heartbeat", {})
    assert result.action == "Heartbeat"
    await csms.next("Heartbeat")

    with pytest.raises(UnsupportedActionError):
        manager.send_action("CP-1", "TransactionEvent", {})
    with pytest.raises(PayloadValidationError):
        manager.send_action("CP-1", "Authorize", {"idTag": 1})


@pytest.mark.asyncio
async def test_manual_boot_after_failed_auto_boot(csms, manager):
    csms.boot_status = "Pending"
    config = station_config("CP-1", csms.url, auto_boot=BootConfig(boot_timeout=0.2))
    with pytest.raises(BootTimeoutError):
        await manager.create(config)

    csms.boot_status = "Accepted"
    manager.send_action("CP-1", "BootNotification", {"chargePointVendor": "V", "chargePointModel": "M"})
    await wait_until(lambda: manager.get_snapshot("CP-1").status is LifecycleStatus.READY)


@pytest.mark.asyncio
async def test_update_applies_on_next_connect(csms, manager):
    await manager.create(
        station_config("CP-1", "ws://127.0.0.1:1", auto_boot=BootConfig(connectors=[1])), auto_connect=False
    )
    patch = StationUpdate(
        endpoint=csms.url,
        metadata={"site": "lab"},
        auto_boot=BootPatch.model_validate({"connectorsPerChargePoint": 2}),
    )
    snapshot = manager.update("CP-1", patch)
    assert snapshot.metadata == {"site": "lab"}
    assert snapshot.auto_boot.connectors == [1, 2]

    snapshot = await manager.connect_by_id("CP-1")
    assert snapshot.status is LifecycleStatus.READY
    assert manager.get_station("CP-1").configuration["NumberOfConnectors"].value == "2"


@pytest.mark.asyncio
async def test_update_can_clear_password(manager):
    await manager.create(station_config("CP-1", "ws://unused", basic_auth_password="secret"), auto_connect=False)

    manager.update("CP-1", StationUpdate(endpoint="ws://other"))
    assert manager.get_config("CP-1").basic_auth_password == "secret"

    manager.update("CP-1", StationUpdate.model_validate({"basicAuthPassword": "rotated"}))
    assert manager.get_config("CP-1").basic_auth_password == "rotated"

    for cleared in (None, ""):
        manager.update("CP-1", StationUpdate.model_validate({"basicAuthPassword": "rotated"}))
        manager.update("CP-1", StationUpdate.model_validate({"basicAuthPassword": cleared}))
        assert manager.get_config("CP-1").basic_auth_password is None
    assert manager.get_config("CP-1").endpoint == "ws://other"


@pytest.mark.asyncio
async def test_remove(csms, manager):
    await manager.create(station_config("CP-1", csms.url))
    await manager.remove("CP-1")
    assert "CP-1" not in manager
    assert manager.list() == []
    with pytest.raises(StationNotFoundError):
        manager.get_config("CP-1")


@pytest.mark.asyncio
async def test_seed_keeps_going_when_one_station_fails(csms):
    config = ResolvedConfig(
        vcps=[
            station_config("GOOD", csms.url, auto_boot=BootConfig()),
            station_config("BAD", "ws://127.0.0.1:1", auto_boot=BootConfig()),
        ]
    )
    manager = VcpManager(config)
    await manager.seed()
    assert manager.get_snapshot("GOOD").status is LifecycleStatus.READY
    assert manager.get_snapshot("BAD").status is LifecycleStatus.ERROR
    await manager.shutdown()
    assert manager.get_snapshot("GOOD").status is LifecycleStatus.STOPPED


def test_snapshot_uses_camel_case_keys():
    manager = VcpManager()
    asyncio.run(manager.create(station_config("CP-1", "ws://unused"), auto_connect=False))
    data = manager.get_snapshot("CP-1").to_dict()
    assert data["id"] == "CP-1"
    assert data["ocppVersion"] == "ocpp1.6"
    assert data["status"] == "idle"
    assert "lastBootAcceptedAt" in data
    assert "chargePointSerialNumber" in data
