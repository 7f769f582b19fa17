"""Signed meter-value records in OCMF (Open Charge Metering Format).

The simulator signs with one fixed ECDSA key so a CSMS can pin the public key
across restarts.  The key is public knowledge; the records are only
tamper-evident for demo purposes.
"""

import base64
import json
from datetime import datetime, timezone
from functools import lru_cache

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

_PRIVATE_VALUE = 0x5EC0_1D5A_17E5_C4A8_6E00_0000_0000_0000_0000_0000_0000_0000_0000_0000_0000_0001
SIGNATURE_ALGORITHM = "ECDSA-secp256r1-SHA256"


@lru_cache(maxsize=1)
def _private_key() -> ec.EllipticCurvePrivateKey:
    return ec.derive_private_key(_PRIVATE_VALUE, ec.SECP256R1())


def ocmf_public_key() -> bytes:
    """DER encoded SubjectPublicKeyInfo of the signing key."""
    return _private_key().public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _ocmf_time(value: datetime) -> str:
    # OCMF wants "2018-07-24T13:22:04,000+0200 S", the trailing flag marks a synced clock
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S,") + f"{value.microsecond // 1000:03d}+0000 S"


def _reading(time: datetime, energy: float, kind: str) -> dict:
    return {
        "TM": _ocmf_time(time),
        "TX": kind,
        "RV": round(energy, 3),
        "RI": "1-b:1.8.0",
        "RU": "kWh",
        "ST": "G",
    }


def generate_ocmf(
    start_time: datetime,
    start_energy: float,
    end_time: datetime,
    end_energy: float,
    id_tag: str,
) -> str:
    """Return ``OCMF|<payload>|<signature>`` for one finished transaction."""
    payload = json.dumps(
        {
            "FV": "1.0",
            "GI": "VirtualChargePoint",
            "GV": "1.0.0",
            "PG": "T1",
            "IS": True,
            "IT": "ISO14443",
            "ID": id_tag,
            "RD": [
                _reading(start_time, start_energy, "B"),
                _reading(end_time, end_energy, "E"),
            ],
        },
        separators=(",", ":"),
    )
    signature = _private_key().sign(payload.encode(), ec.ECDSA(hashes.SHA256()))
    signature_part = json.dumps({"SA": SIGNATURE_ALGORITHM, "SD": signature.hex()}, separators=(",", ":"))
    return f"OCMF|{payload}|{signature_part}"


def signed_meter_value(ocmf: str) -> str:
    """JSON envelope carried in a 1.6 ``SignedData`` sampled value."""
    return json.dumps(
        {
            "signedMeterData": base64.b64encode(ocmf.encode()).decode(),
            "encodingMethod": "OCMF",
            "publicKey": base64.b64encode(ocmf_public_key()).decode(),
        }
    )
