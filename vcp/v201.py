"""OCPP 2.0.1 action catalog.

Handlers are assembled by :func:`build_catalog` so that the 2.1 catalog can
start from the same set and diverge where the revisions do.
"""

import base64
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ocpp.v201.enums import (
    AttributeEnumType,
    AuthorizationStatusEnumType,
    BootReasonEnumType,
    ChangeAvailabilityStatusEnumType,
    ChargingStateEnumType,
    ConnectorStatusEnumType,
    DataTransferStatusEnumType,
    GetVariableStatusEnumType,
    MeasurandEnumType,
    MessageTriggerEnumType,
    OperationalStatusEnumType,
    ReadingContextEnumType,
    ReasonEnumType,
    RegistrationStatusEnumType,
    RequestStartStopStatusEnumType,
    ResetEnumType,
    ResetStatusEnumType,
    SetVariableStatusEnumType,
    TransactionEventEnumType,
    TriggerMessageStatusEnumType,
    TriggerReasonEnumType,
    UnlockStatusEnumType,
)

from .config import BootConfig
from .messages import Call
from .ocpp_handlers import ActionCatalog, OcppVersion, register_catalog, utc_now
from .signing import generate_ocmf, ocmf_public_key
from .state_machine import TransactionState

logger = logging.getLogger(__name__)

# configuration keys exposed as 2.x component variables
VARIABLE_COMPONENTS = {
    "HeartbeatInterval": "OCPPCommCtrlr",
    "MeterValueSampleInterval": "SampledDataCtrlr",
    "NumberOfConnectors": "ChargingStation",
    "AuthorizeRemoteTxRequests": "AuthCtrlr",
    "SupportedFeatureProfiles": "ChargingStation",
}

# SetVariables status for each key store outcome
_SET_STATUS = {
    "Accepted": SetVariableStatusEnumType.accepted,
    "Rejected": SetVariableStatusEnumType.rejected,
    "NotSupported": SetVariableStatusEnumType.unknown_variable,
}


def _energy_sample(value: float, context: str, signed: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    sampled: Dict[str, Any] = {
        "value": int(value),
        "context": context,
        "measurand": MeasurandEnumType.energy_active_import_register,
        "unitOfMeasure": {"unit": "Wh"},
    }
    if signed is not None:
        sampled["signedMeterValue"] = signed
    return {"timestamp": utc_now(), "sampledValue": [sampled]}


def _signed_meter_value(state: TransactionState, end_value: float) -> Dict[str, str]:
    ocmf = generate_ocmf(
        start_time=state.started_at,
        start_energy=0,
        end_time=datetime.now(timezone.utc),
        end_energy=end_value / 1000,
        id_tag=state.id_tag,
    )
    return {
        "signedMeterData": base64.b64encode(ocmf.encode()).decode(),
        "signingMethod": "ECDSA-secp256r1-SHA256",
        "encodingMethod": "OCMF",
        "publicKey": base64.b64encode(ocmf_public_key()).decode(),
    }


def _component_mismatch(item: Dict[str, Any]) -> bool:
    name = item["variable"]["name"]
    return VARIABLE_COMPONENTS.get(name, item["component"]["name"]) != item["component"]["name"]


def build_catalog(version: OcppVersion) -> ActionCatalog:
    catalog = ActionCatalog(version)
    catalog.register_outgoing(
        "BootNotification",
        "Heartbeat",
        "StatusNotification",
        "TransactionEvent",
        "MeterValues",
        "Authorize",
        "DataTransfer",
    )

    # -------- builders --------
    def status_notification(connector_id: int, status: str) -> Call:
        return catalog.request(
            "StatusNotification",
            {
                "timestamp": utc_now(),
                "connectorStatus": status,
                "evseId": connector_id,
                "connectorId": connector_id,
            },
        )

    def boot_notification(
        station_id: str,
        boot: BootConfig,
        serial: Optional[str],
        reason: str = BootReasonEnumType.power_up,
    ) -> Call:
        return catalog.request(
            "BootNotification",
            {
                "reason": reason,
                "chargingStation": {
                    "serialNumber": serial or station_id,
                    "model": boot.charge_point_model,
                    "vendorName": boot.charge_point_vendor,
                    "firmwareVersion": boot.firmware_version,
                },
            },
        )

    def transaction_event(
        vcp,
        state: TransactionState,
        event_type: str,
        trigger_reason: str,
        meter_value: Optional[List[Dict[str, Any]]] = None,
        **transaction_info: Any,
    ) -> Call:
        info = {"transactionId": state.transaction_id, **transaction_info}
        return catalog.request(
            "TransactionEvent",
            {
                "eventType": event_type,
                "timestamp": utc_now(),
                "triggerReason": trigger_reason,
                "seqNo": vcp.transactions.next_seq_no(state.transaction_id),
                "transactionInfo": {k: v for k, v in info.items() if v is not None},
                "evse": {"id": state.evse_id or state.connector_id, "connectorId": state.connector_id},
                "meterValue": meter_value,
            },
        )

    def sample_callback(vcp):
        def send_sample(state: TransactionState) -> None:
            vcp.send(
                transaction_event(
                    vcp,
                    state,
                    TransactionEventEnumType.updated,
                    TriggerReasonEnumType.meter_value_periodic,
                    [_energy_sample(state.meter_value, ReadingContextEnumType.sample_periodic)],
                    chargingState=ChargingStateEnumType.charging,
                )
            )

        return send_sample

    def end_transaction(vcp, state: TransactionState, trigger_reason: str, stopped_reason: str) -> None:
        end_value = vcp.transactions.meter_value(state.transaction_id)
        signed = _signed_meter_value(state, end_value)
        # seqNo is taken before the record is dropped
        ended = transaction_event(
            vcp,
            state,
            TransactionEventEnumType.ended,
            trigger_reason,
            [_energy_sample(end_value, ReadingContextEnumType.transaction_end, signed)],
            chargingState=ChargingStateEnumType.idle,
            stoppedReason=stopped_reason,
        )
        vcp.transactions.stop(state.transaction_id)
        vcp.send(ended)

    catalog.build_boot = boot_notification
    catalog.build_status = status_notification
    catalog.status_connectors = list
    catalog.connector_status = ConnectorStatusEnumType

    # ====== CSMS -> charging station ======
    @catalog.incoming("RequestStartTransaction")
    async def on_request_start_transaction(vcp, call: Call):
        evse_id = call.payload.get("evseId") or 1
        if not vcp.transactions.reserve(evse_id):
            vcp.respond(call.create_call_result({"status": RequestStartStopStatusEnumType.rejected}))
            return

        transaction_id = str(uuid.uuid4())
        vcp.respond(
            call.create_call_result(
                {"status": RequestStartStopStatusEnumType.accepted, "transactionId": transaction_id}
            )
        )
        vcp.send(status_notification(evse_id, ConnectorStatusEnumType.occupied))
        state = vcp.transactions.start(
            evse_id,
            transaction_id,
            call.payload["idToken"]["idToken"],
            evse_id=evse_id,
            callback=sample_callback(vcp),
        )
        vcp.send(
            transaction_event(
                vcp,
                state,
                TransactionEventEnumType.started,
                TriggerReasonEnumType.remote_start,
                [_energy_sample(state.meter_start, ReadingContextEnumType.transaction_begin)],
                chargingState=ChargingStateEnumType.charging,
                remoteStartId=call.payload["remoteStartId"],
            )
        )

    @catalog.incoming("RequestStopTransaction")
    async def on_request_stop_transaction(vcp, call: Call):
        state = vcp.transactions.get(call.payload["transactionId"])
        if state is None:
            vcp.respond(call.create_call_result({"status": RequestStartStopStatusEnumType.rejected}))
            return
        vcp.respond(call.create_call_result({"status": RequestStartStopStatusEnumType.accepted}))
        end_transaction(vcp, state, TriggerReasonEnumType.remote_stop, ReasonEnumType.remote)
        connectors = [state.connector_id]
        for connector_id in vcp.transactions.release_all():
            if connector_id not in connectors:
                connectors.append(connector_id)
        for connector_id in connectors:
            vcp.send(status_notification(connector_id, ConnectorStatusEnumType.available))

    @catalog.incoming("ChangeAvailability")
    async def on_change_availability(vcp, call: Call):
        evse = call.payload.get("evse") or {}
        operational = call.payload["operationalStatus"]
        targets = [evse["id"]] if evse.get("id") else list(vcp.options.connectors)
        busy = any(vcp.transactions.find_by_connector(evse_id) for evse_id in targets)
        if operational == OperationalStatusEnumType.inoperative and busy:
            vcp.respond(call.create_call_result({"status": ChangeAvailabilityStatusEnumType.scheduled}))
            return
        vcp.respond(call.create_call_result({"status": ChangeAvailabilityStatusEnumType.accepted}))
        status = (
            ConnectorStatusEnumType.available
            if operational == OperationalStatusEnumType.operative
            else ConnectorStatusEnumType.unavailable
        )
        for evse_id in targets:
            vcp.send(status_notification(evse_id, status))

    @catalog.incoming("Reset")
    async def on_reset(vcp, call: Call):
        active = list(vcp.transactions.transactions.values())
        if call.payload["type"] == ResetEnumType.on_idle and active:
            vcp.respond(call.create_call_result({"status": ResetStatusEnumType.scheduled}))
            return
        vcp.respond(call.create_call_result({"status": ResetStatusEnumType.accepted}))
        for state in active:
            end_transaction(vcp, state, TriggerReasonEnumType.reset_command, ReasonEnumType.immediate_reset)
            vcp.send(status_notification(state.connector_id, ConnectorStatusEnumType.available))

    @catalog.incoming("TriggerMessage")
    async def on_trigger_message(vcp, call: Call):
        requested = call.payload["requestedMessage"]
        evse_id = (call.payload.get("evse") or {}).get("id") or None
        accepted = call.create_call_result({"status": TriggerMessageStatusEnumType.accepted})
        if requested == MessageTriggerEnumType.boot_notification and vcp.options.boot is not None:
            vcp.respond(accepted)
            vcp.send(
                boot_notification(
                    vcp.options.charge_point_id,
                    vcp.options.boot,
                    vcp.options.serial_number,
                    BootReasonEnumType.triggered,
                )
            )
        elif requested == MessageTriggerEnumType.heartbeat:
            vcp.respond(accepted)
            vcp.send(catalog.request("Heartbeat"))
        elif requested == MessageTriggerEnumType.status_notification:
            vcp.respond(accepted)
            for connector_id in [evse_id] if evse_id else vcp.options.connectors:
                busy = vcp.transactions.find_by_connector(connector_id) is not None
                status = ConnectorStatusEnumType.occupied if busy else ConnectorStatusEnumType.available
                vcp.send(status_notification(connector_id, status))
        elif requested in (MessageTriggerEnumType.meter_values, MessageTriggerEnumType.transaction_event):
            vcp.respond(accepted)
            for state in list(vcp.transactions.transactions.values()):
                if evse_id and state.connector_id != evse_id:
                    continue
                value = vcp.transactions.meter_value(state.transaction_id)
                sample = [_energy_sample(value, ReadingContextEnumType.trigger)]
                if requested == MessageTriggerEnumType.meter_values:
                    vcp.send(catalog.request("MeterValues", {"evseId": state.connector_id, "meterValue": sample}))
                else:
                    vcp.send(
                        transaction_event(
                            vcp,
                            state,
                            TransactionEventEnumType.updated,
                            TriggerReasonEnumType.trigger,
                            sample,
                            chargingState=ChargingStateEnumType.charging,
                        )
                    )
        else:
            vcp.respond(call.create_call_result({"status": TriggerMessageStatusEnumType.not_implemented}))

    @catalog.incoming("UnlockConnector")
    async def on_unlock_connector(vcp, call: Call):
        evse_id = call.payload["evseId"]
        if evse_id not in vcp.options.connectors:
            status = UnlockStatusEnumType.unknown_connector
        elif vcp.transactions.find_by_connector(evse_id) is not None:
            status = UnlockStatusEnumType.ongoing_authorized_transaction
        else:
            status = UnlockStatusEnumType.unlocked
        vcp.respond(call.create_call_result({"status": status}))

    @catalog.incoming("GetVariables")
    async def on_get_variables(vcp, call: Call):
        results = []
        for item in call.payload["getVariableData"]:
            entry = vcp.configuration.get(item["variable"]["name"])
            result: Dict[str, Any] = {"component": item["component"], "variable": item["variable"]}
            if entry is None:
                result["attributeStatus"] = GetVariableStatusEnumType.unknown_variable
            elif _component_mismatch(item):
                result["attributeStatus"] = GetVariableStatusEnumType.unknown_component
            elif item.get("attributeType", AttributeEnumType.actual) != AttributeEnumType.actual:
                result["attributeStatus"] = GetVariableStatusEnumType.not_supported_attribute_type
            else:
                result["attributeStatus"] = GetVariableStatusEnumType.accepted
                result["attributeValue"] = entry.value
            results.append(result)
        vcp.respond(call.create_call_result({"getVariableResult": results}))

    @catalog.incoming("SetVariables")
    async def on_set_variables(vcp, call: Call):
        results = []
        for item in call.payload["setVariableData"]:
            if _component_mismatch(item):
                status = SetVariableStatusEnumType.unknown_component
            else:
                status = _SET_STATUS[vcp.set_configuration(item["variable"]["name"], item["attributeValue"])]
            results.append({"attributeStatus": status, "component": item["component"], "variable": item["variable"]})
        vcp.respond(call.create_call_result({"setVariableResult": results}))

    @catalog.incoming("DataTransfer")
    async def on_data_transfer(vcp, call: Call):
        payload = call.payload
        logger.info(
            f"DataTransfer: vendorId={payload['vendorId']}, messageId={payload.get('messageId')}, "
            f"data={payload.get('data')}"
        )
        vcp.respond(call.create_call_result({"status": DataTransferStatusEnumType.unknown_vendor_id}))

    # ====== CSMS answers ======
    @catalog.result("BootNotification")
    async def on_boot_notification_result(vcp, call: Call, conf: Dict[str, Any]):
        if conf["status"] != RegistrationStatusEnumType.accepted:
            logger.warning(f"BootNotification {conf['status']} | id={vcp.options.charge_point_id}")
            return
        if conf["interval"] > 0:
            vcp.set_configuration("HeartbeatInterval", str(conf["interval"]))
        vcp.emit("BootNotificationAccepted", conf)

    @catalog.result("TransactionEvent")
    async def on_transaction_event_result(vcp, call: Call, conf: Dict[str, Any]):
        token_info = conf.get("idTokenInfo")
        if token_info is None or token_info["status"] == AuthorizationStatusEnumType.accepted:
            return
        transaction_id = call.payload["transactionInfo"]["transactionId"]
        state = vcp.transactions.get(transaction_id)
        if state is None:
            return
        logger.info(f"Transaction {transaction_id} deauthorized ({token_info['status']})")
        end_transaction(vcp, state, TriggerReasonEnumType.deauthorized, ReasonEnumType.de_authorized)
        vcp.send(status_notification(state.connector_id, ConnectorStatusEnumType.available))

    return catalog


catalog = register_catalog(build_catalog(OcppVersion.OCPP_2_0_1))
