"""OCPP 1.6J action catalog."""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional

from ocpp.v16.enums import (
    AuthorizationStatus,
    AvailabilityStatus,
    AvailabilityType,
    ChargePointErrorCode,
    ChargePointStatus,
    ClearCacheStatus,
    DataTransferStatus,
    Measurand,
    MessageTrigger,
    ReadingContext,
    Reason,
    RegistrationStatus,
    RemoteStartStopStatus,
    ResetStatus,
    ResetType,
    TriggerMessageStatus,
    UnitOfMeasure,
    UnlockStatus,
    ValueFormat,
)
from pydantic import BaseModel, ConfigDict, Field

from .config import BootConfig
from .messages import Call, CallError
from .ocpp_handlers import ActionCatalog, OcppVersion, register_catalog, utc_now
from .signing import generate_ocmf, signed_meter_value
from .state_machine import TransactionState

logger = logging.getLogger(__name__)

# 1.6 spells the schema violation code "FormationViolation"
catalog = register_catalog(ActionCatalog(OcppVersion.OCPP_1_6, format_violation="FormationViolation"))
catalog.register_outgoing(
    "BootNotification",
    "Heartbeat",
    "StatusNotification",
    "StartTransaction",
    "StopTransaction",
    "MeterValues",
    "Authorize",
    "DataTransfer",
)


# A CSMS-initiated StartTransaction is outside the 1.6 message set; the
# station answers it with a bare status.
class StartTransactionConfirmation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["Accepted", "Rejected"]
    statusInfo: Optional[str] = Field(default=None, max_length=255)


# -------- builders --------
def status_notification(
    connector_id: int, status: str, error_code: str = ChargePointErrorCode.no_error
) -> Call:
    return catalog.request(
        "StatusNotification",
        {"connectorId": connector_id, "errorCode": error_code, "status": status, "timestamp": utc_now()},
    )


def boot_notification(station_id: str, boot: BootConfig, serial: Optional[str]) -> Call:
    return catalog.request(
        "BootNotification",
        {
            "chargePointVendor": boot.charge_point_vendor,
            "chargePointModel": boot.charge_point_model,
            "chargePointSerialNumber": serial or f"{station_id}-S001",
            "firmwareVersion": boot.firmware_version,
        },
    )


def status_connectors(connectors: Iterable[int]) -> List[int]:
    # 1.6 reports the whole charge point as connector 0 first
    return [0, *connectors]


catalog.build_boot = boot_notification
catalog.build_status = status_notification
catalog.status_connectors = status_connectors
catalog.connector_status = ChargePointStatus


def meter_values(state: TransactionState) -> Call:
    return catalog.request(
        "MeterValues",
        {
            "connectorId": state.connector_id,
            "transactionId": state.transaction_id,
            "meterValue": [
                {
                    "timestamp": utc_now(),
                    "sampledValue": [
                        {
                            "value": str(int(state.meter_value)),
                            "context": ReadingContext.sample_periodic,
                            "measurand": Measurand.energy_active_import_register,
                            "unit": UnitOfMeasure.wh,
                        }
                    ],
                }
            ],
        },
    )


def _send_status_for(vcp, connectors: Iterable[int], status: str) -> None:
    for connector_id in connectors:
        vcp.send(status_notification(connector_id, status))


def _affected(*groups: Iterable[int]) -> List[int]:
    """Connector ids in first-seen order without duplicates."""
    seen: Dict[int, None] = {}
    for group in groups:
        for connector_id in group:
            seen.setdefault(connector_id, None)
    return list(seen)


def _signed_transaction_data(state: TransactionState, end_value: float) -> List[Dict[str, Any]]:
    ocmf = generate_ocmf(
        start_time=state.started_at,
        start_energy=0,
        end_time=datetime.now(timezone.utc),
        end_energy=end_value / 1000,
        id_tag=state.id_tag,
    )
    return [
        {
            "timestamp": utc_now(),
            "sampledValue": [
                {
                    "value": signed_meter_value(ocmf),
                    "format": ValueFormat.signed_data,
                    "context": ReadingContext.transaction_end,
                }
            ],
        }
    ]


def _abandon_start(vcp, connector_id: int) -> None:
    vcp.transactions.release(connector_id)
    vcp.send(status_notification(connector_id, ChargePointStatus.available))


# ====== CSMS -> charge point ======
@catalog.incoming("RemoteStartTransaction")
async def on_remote_start_transaction(vcp, call: Call):
    connector_id = call.payload.get("connectorId") or 1
    if not vcp.transactions.reserve(connector_id):
        logger.info(f"RemoteStartTransaction rejected: connector {connector_id} busy")
        vcp.respond(call.create_call_result({"status": RemoteStartStopStatus.rejected}))
        return

    vcp.respond(call.create_call_result({"status": RemoteStartStopStatus.accepted}))
    vcp.send(status_notification(connector_id, ChargePointStatus.charging))
    vcp.send(
        catalog.request(
            "StartTransaction",
            {
                "connectorId": connector_id,
                "idTag": call.payload["idTag"],
                "meterStart": int(vcp.transactions.connector_meter_value(connector_id)),
                "timestamp": utc_now(),
            },
        )
    )


@catalog.incoming("RemoteStopTransaction")
async def on_remote_stop_transaction(vcp, call: Call):
    transaction_id = call.payload["transactionId"]
    transaction = vcp.transactions.get(transaction_id)
    vcp.respond(call.create_call_result({"status": RemoteStartStopStatus.accepted}))

    meter_stop = int(vcp.transactions.meter_value(transaction_id)) if transaction else 0
    transaction_data = None
    connectors: List[int] = []
    if transaction is not None:
        connectors.append(transaction.connector_id)
        transaction_data = _signed_transaction_data(
            transaction, vcp.transactions.meter_value(transaction_id)
        )
        vcp.transactions.stop(transaction_id)

    vcp.send(
        catalog.request(
            "StopTransaction",
            {
                "transactionId": transaction_id,
                "meterStop": meter_stop,
                "timestamp": utc_now(),
                "reason": Reason.remote,
                "transactionData": transaction_data,
            },
        )
    )
    _send_status_for(vcp, _affected(connectors, vcp.transactions.release_all()), ChargePointStatus.available)


@catalog.incoming("StartTransaction", response_model=StartTransactionConfirmation)
async def on_start_transaction(vcp, call: Call):
    connector_id = call.payload["connectorId"]
    if not vcp.transactions.reserve(connector_id):
        vcp.respond(call.create_call_result({"status": "Rejected", "statusInfo": "Connector already in use"}))
        return

    vcp.respond(call.create_call_result({"status": "Accepted"}))
    vcp.send(status_notification(connector_id, ChargePointStatus.charging))
    vcp.send(
        catalog.request(
            "StartTransaction",
            {
                "connectorId": connector_id,
                "idTag": call.payload["idTag"],
                "meterStart": call.payload["meterStart"],
                "reservationId": call.payload.get("reservationId"),
                "timestamp": call.payload["timestamp"],
            },
        )
    )


@catalog.incoming("StopTransaction")
async def on_stop_transaction(vcp, call: Call):
    connectors: List[int] = []
    transaction = vcp.transactions.stop(call.payload["transactionId"])
    if transaction is not None:
        connectors.append(transaction.connector_id)

    _send_status_for(vcp, _affected(connectors, vcp.transactions.release_all()), ChargePointStatus.available)
    # echo the CSMS-supplied values back verbatim
    vcp.send(catalog.request("StopTransaction", dict(call.payload)))
    vcp.respond(call.create_call_result({"idTagInfo": {"status": AuthorizationStatus.accepted}}))


@catalog.incoming("ChangeAvailability")
async def on_change_availability(vcp, call: Call):
    connector_id = call.payload["connectorId"]
    requested = call.payload["type"]
    busy = (
        vcp.transactions.transactions
        if connector_id == 0
        else vcp.transactions.find_by_connector(connector_id)
    )
    if requested == AvailabilityType.inoperative and busy:
        vcp.respond(call.create_call_result({"status": AvailabilityStatus.scheduled}))
        return
    vcp.respond(call.create_call_result({"status": AvailabilityStatus.accepted}))
    status = (
        ChargePointStatus.available if requested == AvailabilityType.operative else ChargePointStatus.unavailable
    )
    vcp.send(status_notification(connector_id, status))


@catalog.incoming("ChangeConfiguration")
async def on_change_configuration(vcp, call: Call):
    status = vcp.set_configuration(call.payload["key"], call.payload["value"])
    vcp.respond(call.create_call_result({"status": status}))


@catalog.incoming("GetConfiguration")
async def on_get_configuration(vcp, call: Call):
    keys = call.payload.get("key") or list(vcp.configuration)
    known = [
        {"key": key, "readonly": vcp.configuration[key].readonly, "value": vcp.configuration[key].value}
        for key in keys
        if key in vcp.configuration
    ]
    unknown = [key for key in keys if key not in vcp.configuration]
    payload: Dict[str, Any] = {"configurationKey": known}
    if unknown:
        payload["unknownKey"] = unknown
    vcp.respond(call.create_call_result(payload))


@catalog.incoming("ClearCache")
async def on_clear_cache(vcp, call: Call):
    vcp.respond(call.create_call_result({"status": ClearCacheStatus.accepted}))


@catalog.incoming("Reset")
async def on_reset(vcp, call: Call):
    vcp.respond(call.create_call_result({"status": ResetStatus.accepted}))
    reason = Reason.hard_reset if call.payload["type"] == ResetType.hard else Reason.soft_reset
    for state in list(vcp.transactions.transactions.values()):
        stopped = vcp.transactions.stop(state.transaction_id)
        vcp.send(
            catalog.request(
                "StopTransaction",
                {
                    "transactionId": stopped.transaction_id,
                    "meterStop": int(stopped.meter_value),
                    "timestamp": utc_now(),
                    "idTag": stopped.id_tag,
                    "reason": reason,
                },
            )
        )
        vcp.send(status_notification(stopped.connector_id, ChargePointStatus.available))


@catalog.incoming("TriggerMessage")
async def on_trigger_message(vcp, call: Call):
    requested = call.payload["requestedMessage"]
    only_connector = call.payload.get("connectorId")
    if requested == MessageTrigger.boot_notification:
        if vcp.options.boot is None:
            vcp.respond(call.create_call_result({"status": TriggerMessageStatus.rejected}))
            return
        vcp.respond(call.create_call_result({"status": TriggerMessageStatus.accepted}))
        vcp.send(boot_notification(vcp.options.charge_point_id, vcp.options.boot, vcp.options.serial_number))
    elif requested == MessageTrigger.heartbeat:
        vcp.respond(call.create_call_result({"status": TriggerMessageStatus.accepted}))
        vcp.send(catalog.request("Heartbeat"))
    elif requested == MessageTrigger.status_notification:
        vcp.respond(call.create_call_result({"status": TriggerMessageStatus.accepted}))
        connectors = [only_connector] if only_connector else status_connectors(vcp.options.connectors)
        for connector_id in connectors:
            busy = vcp.transactions.find_by_connector(connector_id) is not None
            vcp.send(
                status_notification(
                    connector_id, ChargePointStatus.charging if busy else ChargePointStatus.available
                )
            )
    elif requested == MessageTrigger.meter_values:
        vcp.respond(call.create_call_result({"status": TriggerMessageStatus.accepted}))
        for state in list(vcp.transactions.transactions.values()):
            if only_connector and state.connector_id != only_connector:
                continue
            value = vcp.transactions.meter_value(state.transaction_id)
            vcp.send(meter_values(replace(state, meter_value=value)))
    else:
        vcp.respond(call.create_call_result({"status": TriggerMessageStatus.not_implemented}))


@catalog.incoming("UnlockConnector")
async def on_unlock_connector(vcp, call: Call):
    if call.payload["connectorId"] not in vcp.options.connectors:
        vcp.respond(call.create_call_result({"status": UnlockStatus.not_supported}))
        return
    vcp.respond(call.create_call_result({"status": UnlockStatus.unlocked}))


@catalog.incoming("DataTransfer")
async def on_data_transfer(vcp, call: Call):
    payload = call.payload
    logger.info(
        f"DataTransfer: vendorId={payload['vendorId']}, messageId={payload.get('messageId')}, "
        f"data={payload.get('data')}"
    )
    vcp.respond(call.create_call_result({"status": DataTransferStatus.unknown_vendor_id}))


# ====== CSMS answers to our requests ======
@catalog.result("BootNotification")
async def on_boot_notification_result(vcp, call: Call, conf: Dict[str, Any]):
    if conf["status"] != RegistrationStatus.accepted:
        logger.warning(f"BootNotification {conf['status']} | id={vcp.options.charge_point_id}")
        return
    if conf["interval"] > 0:
        vcp.set_configuration("HeartbeatInterval", str(conf["interval"]))
    vcp.emit("BootNotificationAccepted", conf)


@catalog.result("StartTransaction")
async def on_start_transaction_result(vcp, call: Call, conf: Dict[str, Any]):
    connector_id = call.payload["connectorId"]
    status = conf["idTagInfo"]["status"]
    if status != AuthorizationStatus.accepted:
        logger.info(f"StartTransaction not accepted ({status}) on connector {connector_id}")
        _abandon_start(vcp, connector_id)
        return
    vcp.transactions.start(
        connector_id,
        conf["transactionId"],
        call.payload["idTag"],
        callback=lambda state: vcp.send(meter_values(state)),
    )


@catalog.error("StartTransaction")
async def on_start_transaction_error(vcp, call: Call, error: CallError):
    connector_id = call.payload["connectorId"]
    logger.info(f"StartTransaction failed ({error.error_code}) on connector {connector_id}")
    _abandon_start(vcp, connector_id)
