import httpx
import pytest_asyncio

from csms import FakeCsms
from vcp.evse import app
from vcp.manager import VcpManager
from vcp.ocpp_handlers import OcppVersion
from vcp.station import VCP, VCPOptions


@pytest_asyncio.fixture
async def csms():
    server = await FakeCsms().start()
    yield server
    await server.stop()


async def _connected_station(csms, version: OcppVersion, cp_id: str) -> VCP:
    vcp = VCP(VCPOptions(charge_point_id=cp_id, endpoint=csms.url, ocpp_version=version, connectors=[1, 2]))
    await vcp.connect()
    await csms.wait_connected(cp_id)
    return vcp


@pytest_asyncio.fixture
async def station(csms):
    vcp = await _connected_station(csms, OcppVersion.OCPP_1_6, "CP-1")
    yield vcp
    vcp.close()
    await vcp.wait_closed()


@pytest_asyncio.fixture
async def station201(csms):
    vcp = await _connected_station(csms, OcppVersion.OCPP_2_0_1, "CS-1")
    yield vcp
    vcp.close()
    await vcp.wait_closed()


@pytest_asyncio.fixture
async def manager():
    vcp_manager = VcpManager()
    yield vcp_manager
    await vcp_manager.shutdown()


@pytest_asyncio.fixture
async def client(manager):
    app.state.manager = manager
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
