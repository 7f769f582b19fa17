import argparse
import json
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

API_BASE = os.getenv("ADMIN_URL", "http://localhost:9999")
DEFAULT_IDTAG = "DEMO_IDTAG"


def _do_json(method: str, url: str, body: Optional[Dict[str, Any]] = None) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "Connection": "close",
    }
    data = json.dumps(body) if body is not None else None
    resp = requests.request(method, url, data=data, headers=headers, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _ocpp_version(cpid: str) -> str:
    resp = requests.get(f"{API_BASE}/vcp/{cpid}", timeout=15)
    resp.raise_for_status()
    return resp.json()["ocppVersion"]


def _send_action(cpid: str, action: str, payload: Dict[str, Any]) -> requests.Response:
    return _do_json("POST", f"{API_BASE}/vcp/{cpid}/action", {"action": action, "payload": payload})


def list_vcps() -> None:
    _do_json("GET", f"{API_BASE}/vcp")


def start_charge(cpid: str, connector_id: int, id_tag: str) -> None:
    if _ocpp_version(cpid) == "ocpp1.6":
        payload = {
            "connectorId": connector_id,
            "idTag": id_tag,
            "meterStart": 0,
            "timestamp": _timestamp(),
        }
        _send_action(cpid, "StartTransaction", payload)
        return
    payload = {
        "eventType": "Started",
        "timestamp": _timestamp(),
        "triggerReason": "Authorized",
        "seqNo": 0,
        "transactionInfo": {"transactionId": str(uuid.uuid4()), "chargingState": "Charging"},
        "evse": {"id": connector_id, "connectorId": connector_id},
        "idToken": {"idToken": id_tag, "type": "ISO14443"},
    }
    _send_action(cpid, "TransactionEvent", payload)


def stop_charge(cpid: str, transaction_id: str, meter_stop: int) -> None:
    if _ocpp_version(cpid) == "ocpp1.6":
        payload = {
            "transactionId": int(transaction_id),
            "meterStop": meter_stop,
            "timestamp": _timestamp(),
            "reason": "Local",
        }
        _send_action(cpid, "StopTransaction", payload)
        return
    payload = {
        "eventType": "Ended",
        "timestamp": _timestamp(),
        "triggerReason": "StopAuthorized",
        "seqNo": 1,
        "transactionInfo": {"transactionId": transaction_id, "stoppedReason": "Local"},
        "meterValue": [
            {
                "timestamp": _timestamp(),
                "sampledValue": [
                    {
                        "value": meter_stop,
                        "context": "Transaction.End",
                        "measurand": "Energy.Active.Import.Register",
                    }
                ],
            }
        ],
    }
    _send_action(cpid, "TransactionEvent", payload)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive virtual charge points through the admin API")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="list virtual charge points")

    p_start = sub.add_parser("start", help="start a transaction on a connector")
    p_start.add_argument("cpid")
    p_start.add_argument("connectorId", type=int)
    p_start.add_argument("idTag", nargs="?", default=DEFAULT_IDTAG)

    p_stop = sub.add_parser("stop", help="stop a transaction")
    p_stop.add_argument("cpid")
    p_stop.add_argument("transactionId")
    p_stop.add_argument("meterStop", type=int)

    p_connect = sub.add_parser("connect", help="connect (and auto-boot) a charge point")
    p_connect.add_argument("cpid")

    p_halt = sub.add_parser("halt", help="close a charge point's connection")
    p_halt.add_argument("cpid")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.cmd == "list":
        list_vcps()
    elif args.cmd == "start":
        start_charge(args.cpid, args.connectorId, args.idTag)
    elif args.cmd == "stop":
        stop_charge(args.cpid, args.transactionId, args.meterStop)
    elif args.cmd == "connect":
        _do_json("POST", f"{API_BASE}/vcp/{args.cpid}/connect")
    elif args.cmd == "halt":
        _do_json("POST", f"{API_BASE}/vcp/{args.cpid}/stop")


if __name__ == "__main__":
    main()
