import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import Field, ValidationError

from .config import LOG_LEVEL, BootConfig, BootPatch, CamelModel, StationConfig, StationUpdate, load_config
from .manager import StationExistsError, StationNotFoundError, VcpManager
from .messages import OcppError
from .ocpp_handlers import OcppVersion

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Virtual Charge Point Admin", version="1.0.0")
app.state.manager = VcpManager()


class CreateVcpReq(CamelModel):
    id: str = Field(min_length=1)
    ocpp_version: OcppVersion
    endpoint: str = Field(min_length=1)
    basic_auth_password: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    charge_point_serial_number: Optional[str] = None
    auto_boot: Optional[BootPatch] = None
    auto_connect: bool = True


class ConnectReq(CamelModel):
    auto_boot: Optional[BootPatch] = None


class ActionReq(CamelModel):
    action: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


def get_manager(request: Request) -> VcpManager:
    return request.app.state.manager


@contextmanager
def _station_errors(station_id: str, what: str):
    try:
        yield
    except StationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StationExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (OcppError, ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to {what} VCP {station_id}")
        raise HTTPException(status_code=400, detail=str(e) or type(e).__name__)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f">>> {request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"<<< {request.method} {request.url.path} -> {response.status_code}")
    return response


@app.get("/health")
async def health():
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}


@app.get("/vcp")
async def list_vcps(request: Request):
    return [snapshot.to_dict() for snapshot in get_manager(request).list()]


@app.get("/vcp/{vcp_id}")
async def get_vcp(vcp_id: str, request: Request):
    snapshot = get_manager(request).get_snapshot(vcp_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"VCP {vcp_id} not found")
    return snapshot.to_dict()


@app.post("/vcp", status_code=201)
async def create_vcp(req: CreateVcpReq, request: Request):
    boot = BootConfig()
    if req.auto_boot is not None:
        boot = boot.merged(req.auto_boot)
    config = StationConfig(
        id=req.id,
        ocpp_version=req.ocpp_version,
        endpoint=req.endpoint,
        basic_auth_password=req.basic_auth_password or None,
        metadata=req.metadata,
        charge_point_serial_number=req.charge_point_serial_number,
        auto_boot=boot,
    )
    with _station_errors(req.id, "create"):
        snapshot = await get_manager(request).create(config, auto_connect=req.auto_connect)
    return snapshot.to_dict()


@app.post("/vcp/{vcp_id}/connect")
async def connect_vcp(vcp_id: str, request: Request, req: Optional[ConnectReq] = None):
    manager = get_manager(request)
    with _station_errors(vcp_id, "connect"):
        auto_boot = None
        if req is not None and req.auto_boot is not None:
            current = manager.get_config(vcp_id).auto_boot or BootConfig()
            auto_boot = current.merged(req.auto_boot)
        snapshot = await manager.connect_by_id(vcp_id, auto_boot=auto_boot)
    return {"id": vcp_id, "status": snapshot.status.value}


@app.post("/vcp/{vcp_id}/stop")
async def stop_vcp(vcp_id: str, request: Request):
    with _station_errors(vcp_id, "stop"):
        snapshot = await get_manager(request).stop(vcp_id)
    return {"id": vcp_id, "status": snapshot.status.value}


@app.patch("/vcp/{vcp_id}")
async def update_vcp(vcp_id: str, req: StationUpdate, request: Request):
    with _station_errors(vcp_id, "update"):
        return get_manager(request).update(vcp_id, req).to_dict()


@app.post("/vcp/{vcp_id}/action")
async def send_action(vcp_id: str, req: ActionReq, request: Request):
    with _station_errors(vcp_id, "send action to"):
        result = get_manager(request).send_action(vcp_id, req.action, req.payload)
    return {"id": vcp_id, "status": "queued", "messageId": result.message_id}


@app.delete("/vcp/{vcp_id}", status_code=202)
async def remove_vcp(vcp_id: str, request: Request):
    with _station_errors(vcp_id, "remove"):
        await get_manager(request).remove(vcp_id)
    return {"id": vcp_id, "status": "removed"}


async def main(config_path: Optional[str] = None):
    config = load_config(config_path)
    manager = VcpManager(config)
    app.state.manager = manager

    # uvicorn owns SIGINT/SIGTERM; serve() returns once it has shut down
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=config.admin.port, loop="asyncio", log_level="info"))
    api_task = asyncio.create_task(server.serve())
    logger.info(f"Admin API listening on port {config.admin.port}, starting {len(config.vcps)} VCP(s)")
    await manager.seed()
    try:
        await api_task
    finally:
        logger.info("Shutting down, stopping all VCPs")
        await manager.shutdown()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
