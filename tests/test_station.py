import asyncio
import base64
import json

import pytest

from csms import FakeClock, wait_until
from vcp.messages import (
    NotConnectedError,
    PayloadValidationError,
    UnknownMessageError,
    UnsupportedActionError,
    call,
)
from vcp.ocpp_handlers import OcppVersion
from vcp.station import VCP, VCPOptions


@pytest.mark.asyncio
async def test_connects_with_subprotocol_and_station_path(csms, station):
    assert csms.subprotocols["CP-1"] == "ocpp1.6"
    assert station.is_connected


@pytest.mark.asyncio
async def test_basic_auth_header(csms):
    vcp = VCP(VCPOptions(charge_point_id="CP-AUTH", endpoint=csms.url, basic_auth_password="secret"))
    await vcp.connect()
    await csms.wait_connected("CP-AUTH")
    expected = base64.b64encode(b"CP-AUTH:secret").decode()
    assert csms.headers["CP-AUTH"]["Authorization"] == f"Basic {expected}"
    vcp.close()
    await vcp.wait_closed()


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_socket(csms):
    vcp = VCP(VCPOptions(charge_point_id="CP-TWICE", endpoint=csms.url))
    await asyncio.gather(vcp.connect(), vcp.connect())
    await csms.wait_connected("CP-TWICE")
    assert csms.connection_count["CP-TWICE"] == 1
    vcp.close()
    await vcp.wait_closed()


@pytest.mark.asyncio
async def test_remote_start_stop(csms, station):
    result = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 1, "idTag": "REMOTETAG"})
    assert result[0] == 3
    assert result[2] == {"status": "Accepted"}

    status = await csms.next("StatusNotification")
    assert (status["connectorId"], status["status"]) == (1, "Charging")
    start = await csms.next("StartTransaction")
    assert (start["connectorId"], start["idTag"], start["meterStart"]) == (1, "REMOTETAG", 0)
    await wait_until(lambda: station.transactions.get(1) is not None)

    # the answer is queued before the requests the handler issues
    frames = csms.frames["CP-1"]
    answer_at = next(i for i, frame in enumerate(frames) if frame[0] == 3)
    assert frames[answer_at + 1][2] == "StatusNotification"
    assert frames[answer_at + 2][2] == "StartTransaction"

    result = await csms.call("CP-1", "RemoteStopTransaction", {"transactionId": 1})
    assert result[2] == {"status": "Accepted"}
    stop = await csms.next("StopTransaction")
    assert (stop["transactionId"], stop["reason"]) == (1, "Remote")
    sampled = stop["transactionData"][0]["sampledValue"][0]
    assert (sampled["format"], sampled["context"]) == ("SignedData", "Transaction.End")
    assert json.loads(sampled["value"])["encodingMethod"] == "OCMF"
    status = await csms.next("StatusNotification")
    assert (status["connectorId"], status["status"]) == (1, "Available")
    assert station.transactions.get(1) is None


@pytest.mark.asyncio
async def test_remote_start_rejected_while_start_pending(csms, station):
    csms.replies["StartTransaction"] = None
    first = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 2, "idTag": "A"})
    second = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 2, "idTag": "B"})
    assert first[2] == {"status": "Accepted"}
    assert second[2] == {"status": "Rejected"}
    await csms.next("StartTransaction")
    assert csms.queue("StartTransaction").empty()


@pytest.mark.asyncio
async def test_remote_stop_unknown_transaction(csms, station):
    result = await csms.call("CP-1", "RemoteStopTransaction", {"transactionId": 77})
    assert result[2] == {"status": "Accepted"}
    stop = await csms.next("StopTransaction")
    assert (stop["transactionId"], stop["meterStop"]) == (77, 0)
    assert "transactionData" not in stop


@pytest.mark.asyncio
async def test_unknown_action_gets_not_implemented(csms, station):
    result = await csms.call("CP-1", "FancyAction", {})
    assert result[0] == 4
    assert result[2] == "NotImplemented"


@pytest.mark.asyncio
async def test_bad_payload_gets_formation_violation(csms, station):
    result = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": "one"})
    assert result[0] == 4
    assert result[2] == "FormationViolation"


@pytest.mark.asyncio
async def test_protocol_errors_keep_connection_open(csms, station):
    errors = []
    station.on("protocol_error", errors.append)
    await csms.send_raw("CP-1", '[3,"never-sent",{}]')
    await csms.send_raw("CP-1", "this is not json")
    await wait_until(lambda: len(errors) == 2)
    assert isinstance(errors[0], UnknownMessageError)

    result = await csms.call("CP-1", "ClearCache", {})
    assert result[2] == {"status": "Accepted"}


@pytest.mark.asyncio
async def test_call_result_resolves_outbox_entry(csms, station):
    accepted = station.wait_for("BootNotificationAccepted")
    station.send(call("BootNotification", {"chargePointVendor": "V", "chargePointModel": "M"}))
    conf = await asyncio.wait_for(accepted, timeout=5)
    assert conf["status"] == "Accepted"
    assert len(station.outbox) == 0


@pytest.mark.asyncio
async def test_heartbeat_timer(csms, station):
    station.configure_heartbeat(20)
    await csms.next("Heartbeat")
    await csms.next("Heartbeat")
    station.configure_heartbeat(0)


@pytest.mark.asyncio
async def test_boot_interval_arms_heartbeat(csms, station):
    csms.heartbeat_interval = 1
    station.send(call("BootNotification", {"chargePointVendor": "V", "chargePointModel": "M"}))
    await csms.next("Heartbeat")
    assert station.configuration["HeartbeatInterval"].value == "1"


@pytest.mark.asyncio
async def test_deliberate_close(csms, station):
    events = []
    station.on("disconnected", events.append)
    station.close()
    info = await asyncio.wait_for(station.wait_closed(), timeout=5)
    assert info.expected is True
    assert events == [info]
    with pytest.raises(NotConnectedError):
        station.send(call("Heartbeat"))


@pytest.mark.asyncio
async def test_remote_close_is_unexpected(csms, station):
    station.configure_heartbeat(60_000)
    await csms.disconnect("CP-1", code=1011, reason="boom")
    info = await asyncio.wait_for(station.wait_closed(), timeout=5)
    assert (info.expected, info.code, info.reason) == (False, 1011, "boom")
    assert not station.is_connected
    assert station._heartbeat_task is None


@pytest.mark.asyncio
async def test_reconnect_after_close(csms, station):
    station.close()
    await station.wait_closed()
    await station.connect()
    await wait_until(lambda: csms.connection_count["CP-1"] == 2)
    result = await csms.call("CP-1", "ClearCache", {})
    assert result[2] == {"status": "Accepted"}


@pytest.mark.asyncio
async def test_send_validates_against_revision(station201):
    with pytest.raises(UnsupportedActionError):
        station201.send(call("StartTransaction", {}))
    with pytest.raises(PayloadValidationError):
        station201.send(call("Heartbeat", {"unexpected": 1}))
    assert len(station201.outbox) == 0
    assert station201.options.ocpp_version is OcppVersion.OCPP_2_0_1


@pytest.mark.asyncio
async def test_start_transaction_call_error_releases_connector(csms, station):
    csms.errors["StartTransaction"] = ("InternalError", "db down")
    result = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 1, "idTag": "A"})
    assert result[2] == {"status": "Accepted"}
    await csms.next("StartTransaction")
    assert (await csms.next("StatusNotification"))["status"] == "Charging"
    assert (await csms.next("StatusNotification"))["status"] == "Available"
    assert station.transactions.can_start(1)

    del csms.errors["StartTransaction"]
    result = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 1, "idTag": "B"})
    assert result[2] == {"status": "Accepted"}
    await wait_until(lambda: station.transactions.find_by_connector(1) is not None)


@pytest.mark.asyncio
async def test_disconnect_releases_pending_start(csms, station):
    csms.replies["StartTransaction"] = None
    result = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 1, "idTag": "A"})
    assert result[2] == {"status": "Accepted"}
    await csms.next("StartTransaction")
    assert station.transactions.is_reserved(1)

    await csms.disconnect("CP-1")
    await asyncio.wait_for(station.wait_closed(), timeout=5)
    assert not station.transactions.is_reserved(1)
    assert len(station.outbox) == 0

    await station.connect()
    await wait_until(lambda: csms.connection_count["CP-1"] == 2 and "CP-1" in csms.connections)
    result = await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 1, "idTag": "B"})
    assert result[2] == {"status": "Accepted"}


@pytest.mark.asyncio
async def test_periodic_meter_values_follow_the_clock(csms, station):
    clock = FakeClock()
    station.transactions._clock = clock
    station.transactions.meter_values_interval = 0.02
    await csms.call("CP-1", "RemoteStartTransaction", {"connectorId": 1, "idTag": "TAG"})
    await wait_until(lambda: station.transactions.get(1) is not None)

    clock.now += 15
    while True:
        meter = await csms.next("MeterValues")
        sampled = meter["meterValue"][0]["sampledValue"][0]
        if int(sampled["value"]) >= 150:
            break
    assert (meter["connectorId"], meter["transactionId"]) == (1, 1)
    assert (sampled["measurand"], sampled["unit"], sampled["context"]) == (
        "Energy.Active.Import.Register",
        "Wh",
        "Sample.Periodic",
    )

    await csms.call("CP-1", "RemoteStopTransaction", {"transactionId": 1})
    stop = await csms.next("StopTransaction")
    assert stop["meterStop"] == int(sampled["value"]) == 150


@pytest.mark.asyncio
async def test_interleaved_answers_drain_the_outbox(csms, station):
    csms.replies["Heartbeat"] = None
    errors = []
    station.on("protocol_error", errors.append)
    sent = [station.send(call("Heartbeat")) for _ in range(5)]
    await wait_until(lambda: csms.actions("CP-1").count("Heartbeat") == 5)
    assert len(station.outbox) == 5

    for request in sent[1::2] + sent[::2][::-1]:
        await csms.send_raw("CP-1", json.dumps([3, request.unique_id, {"currentTime": "2024-01-01T00:00:00Z"}]))
    await wait_until(lambda: len(station.outbox) == 0)
    assert errors == []
