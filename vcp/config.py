import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .ocpp_handlers import OcppVersion

logger = logging.getLogger(__name__)

WS_URL = os.getenv("WS_URL", "ws://localhost:8092")
PASSWORD = os.getenv("PASSWORD") or None
CP_IDS = os.getenv("CP_IDS") or os.getenv("CP_ID") or "CP-001,CP-002,CP-003"
OCPP_VERSION = os.getenv("OCPP_VERSION", "ocpp1.6")

CHARGE_POINT_VENDOR = os.getenv("CHARGE_POINT_VENDOR", "Solidstudio")
CHARGE_POINT_MODEL = os.getenv("CHARGE_POINT_MODEL", "VirtualChargePoint")
CHARGE_POINT_SERIAL_NUMBER = os.getenv("CHARGE_POINT_SERIAL_NUMBER")
FIRMWARE_VERSION = os.getenv("FIRMWARE_VERSION", "1.0.0")
AUTO_BOOT_DISABLED = os.getenv("AUTO_BOOT_DISABLED", "false").lower() == "true"

METER_VALUES_INTERVAL_SEC = float(os.getenv("METER_VALUES_INTERVAL_SEC", "15"))
VCP_CONFIG_FILE = os.getenv("VCP_CONFIG_FILE", "config/vcps.json")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def _int_env(name: str, fallback: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return fallback


CONNECTORS_PER_CP = max(1, _int_env("CONNECTORS_PER_CP", 1))
ADMIN_PORT = _int_env("ADMIN_PORT", _int_env("ADMIN_WS_PORT", 9999))


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BootConfig(CamelModel):
    enabled: bool = True
    charge_point_vendor: str = "Solidstudio"
    charge_point_model: str = "VirtualChargePoint"
    firmware_version: str = "1.0.0"
    connectors: List[int] = Field(default_factory=lambda: [1], min_length=1)
    # seconds; None waits for BootNotification acceptance forever
    boot_timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _expand_connector_count(cls, data: Any) -> Any:
        return _expand_connector_count(data)

    def merged(self, patch: "BootPatch") -> "BootConfig":
        return BootConfig.model_validate({**self.model_dump(), **patch.model_dump(exclude_unset=True, exclude_none=True)})


def _expand_connector_count(data: Any) -> Any:
    # admin clients send a count, config files an explicit id list
    if not isinstance(data, dict):
        return data
    count_keys = ("connectorsPerChargePoint", "connectors_per_charge_point")
    count = next((data[key] for key in count_keys if data.get(key) is not None), None)
    data = {k: v for k, v in data.items() if k not in count_keys}
    if count is not None:
        data["connectors"] = list(range(1, int(count) + 1))
    return data


class BootPatch(CamelModel):
    enabled: Optional[bool] = None
    charge_point_vendor: Optional[str] = None
    charge_point_model: Optional[str] = None
    firmware_version: Optional[str] = None
    connectors: Optional[List[int]] = Field(default=None, min_length=1)
    boot_timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _expand_connector_count(cls, data: Any) -> Any:
        return _expand_connector_count(data)


class StationConfig(CamelModel):
    """Resolved configuration of one virtual charge point."""

    id: str = Field(min_length=1)
    ocpp_version: OcppVersion = OcppVersion.OCPP_1_6
    endpoint: str = WS_URL
    basic_auth_password: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    auto_boot: Optional[BootConfig] = None
    charge_point_serial_number: Optional[str] = None


class StationUpdate(CamelModel):
    """Fields that may change between connects."""

    endpoint: Optional[str] = None
    basic_auth_password: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    charge_point_serial_number: Optional[str] = None
    auto_boot: Optional[BootPatch] = None


class Defaults(CamelModel):
    endpoint: str = "ws://localhost:8092"
    basic_auth_password: Optional[str] = None
    auto_boot: Optional[BootConfig] = None


class AdminConfig(CamelModel):
    port: int = Field(default=9999, gt=0)


class RuntimeConfig(CamelModel):
    admin: AdminConfig = Field(default_factory=AdminConfig)
    defaults: Defaults = Field(default_factory=Defaults)
    vcps: List[Dict[str, Any]] = Field(min_length=1)


class ResolvedConfig(CamelModel):
    admin: AdminConfig = Field(default_factory=AdminConfig)
    vcps: List[StationConfig] = Field(default_factory=list)


def default_serial(station_id: str, index: int) -> str:
    return f"{station_id}-S{index + 1:03d}"


def merge_boot_config(specific: Optional[Dict[str, Any]], defaults: Optional[BootConfig]) -> Optional[BootConfig]:
    if specific is None and defaults is None:
        return None
    base = defaults or BootConfig()
    if specific:
        return base.merged(BootPatch.model_validate(specific))
    return base.model_copy()


def resolve_station(raw: Dict[str, Any], defaults: Defaults, index: int) -> StationConfig:
    raw = dict(raw)
    boot = merge_boot_config(raw.pop("autoBoot", raw.pop("auto_boot", None)), defaults.auto_boot)
    config = StationConfig.model_validate(
        {
            "endpoint": defaults.endpoint,
            "basicAuthPassword": defaults.basic_auth_password,
            **raw,
        }
    )
    config.auto_boot = boot
    if not config.charge_point_serial_number:
        config.charge_point_serial_number = default_serial(config.id, index)
    return config


def build_config_from_env() -> RuntimeConfig:
    ids = [cp_id.strip() for cp_id in CP_IDS.split(",") if cp_id.strip()]
    version = OcppVersion.parse(OCPP_VERSION)
    return RuntimeConfig.model_validate(
        {
            "admin": {"port": ADMIN_PORT},
            "defaults": {
                "endpoint": WS_URL,
                "basicAuthPassword": PASSWORD,
                "autoBoot": {
                    "enabled": not AUTO_BOOT_DISABLED,
                    "chargePointVendor": CHARGE_POINT_VENDOR,
                    "chargePointModel": CHARGE_POINT_MODEL,
                    "firmwareVersion": FIRMWARE_VERSION,
                    "connectors": list(range(1, CONNECTORS_PER_CP + 1)),
                },
            },
            "vcps": [
                {
                    "id": cp_id,
                    "ocppVersion": version.value,
                    "chargePointSerialNumber": CHARGE_POINT_SERIAL_NUMBER or default_serial(cp_id, index),
                }
                for index, cp_id in enumerate(ids)
            ],
        }
    )


def load_config_file(path: Path) -> Optional[RuntimeConfig]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning(f"Config file not found at {path}. Falling back to environment defaults.")
        return None
    return RuntimeConfig.model_validate(json.loads(raw))


def load_config(path: Optional[str] = None) -> ResolvedConfig:
    runtime = load_config_file(Path(path or VCP_CONFIG_FILE)) or build_config_from_env()
    return ResolvedConfig(
        admin=runtime.admin,
        vcps=[resolve_station(raw, runtime.defaults, index) for index, raw in enumerate(runtime.vcps)],
    )
