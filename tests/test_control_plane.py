import json
import time

import httpx
import pytest
import pytest_asyncio

from conftest import make_jwt
from control_plane import ControlPlaneClient, MAX_ERROR_MESSAGE_LENGTH
from errors import ControlPlaneError, GatewayError, ValidationError, map_control_plane_error
from models import ProcessConfig
from process_config import build_ingest_config, ingest_process_id


STREAM_UUID = "0b6f3c1e-4a8d-4f5b-9c2e-7d1a2b3c4d5e"
PROCESS_ID = ingest_process_id(STREAM_UUID)


class ProcessApiStub:
    """Fake control plane: auth endpoints plus scripted process responses"""

    def __init__(self):
        self.logins = 0
        self.refreshes = 0
        self.requests = []
        # Queue of (status, body) returned for /api/v3 calls; last one repeats
        self.responses = [(200, {})]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/login":
            self.logins += 1
            return httpx.Response(200, json={
                "access_token": make_jwt(time.time() + 3600, {"n": self.logins}),
                "refresh_token": make_jwt(time.time() + 86400),
            })
        if path == "/api/login/refresh":
            self.refreshes += 1
            return httpx.Response(200, json={
                "access_token": make_jwt(time.time() + 3600, {"r": self.refreshes}),
            })

        self.requests.append(request)
        status, body = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body or "")


class TestControlPlaneClient:
    """Test authenticated process calls against a scripted control plane"""

    @pytest.fixture
    def stub(self):
        return ProcessApiStub()

    @pytest_asyncio.fixture
    async def client(self, stub):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
        cp = ControlPlaneClient("http://cp.local/", "admin", "s3cret", http_client=http_client)
        yield cp
        await cp.close()

    @pytest.mark.asyncio
    async def test_hls_url(self, client):
        assert client.hls_url(STREAM_UUID) == f"http://cp.local/memfs/{STREAM_UUID}.m3u8"

    @pytest.mark.asyncio
    async def test_requests_carry_bearer_token(self, client, stub):
        stub.responses = [(200, [])]
        await client.list_processes()
        request = stub.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/api/v3/process"
        assert request.headers["authorization"].startswith("Bearer ")
        assert stub.logins == 1

    @pytest.mark.asyncio
    async def test_single_401_is_retried_transparently(self, client, stub):
        stub.responses = [
            (401, "token expired"),
            (200, {"id": PROCESS_ID, "reference": STREAM_UUID}),
        ]
        process = await client.get_process(PROCESS_ID)
        assert process.id == PROCESS_ID
        assert len(stub.requests) == 2
        first, second = stub.requests
        assert first.headers["authorization"] != second.headers["authorization"]

    @pytest.mark.asyncio
    async def test_two_401s_surface_without_looping(self, client, stub):
        stub.responses = [(401, "unauthorized")]
        with pytest.raises(ControlPlaneError) as exc_info:
            await client.get_process(PROCESS_ID)
        assert exc_info.value.status_code == 401
        assert len(stub.requests) == 2
        assert map_control_plane_error(exc_info.value)[0] == 503

    @pytest.mark.asyncio
    async def test_error_status_raises_with_trimmed_message(self, client, stub):
        stub.responses = [(404, "  " + "x" * 2000 + "  ")]
        with pytest.raises(ControlPlaneError) as exc_info:
            await client.get_process(PROCESS_ID)
        assert exc_info.value.status_code == 404
        assert len(exc_info.value.message) == MAX_ERROR_MESSAGE_LENGTH
        assert map_control_plane_error(exc_info.value) == (404, "stream not found")

    @pytest.mark.asyncio
    async def test_invalid_json_is_a_control_plane_error(self, client, stub):
        stub.responses = [(200, "<html>oops</html>")]
        with pytest.raises(ControlPlaneError) as exc_info:
            await client.get_process(PROCESS_ID)
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_network_failure_raises_gateway_error(self, stub):
        def handler(request):
            if request.url.path.startswith("/api/v3"):
                raise httpx.ConnectError("connection refused", request=request)
            return stub(request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        cp = ControlPlaneClient("http://cp.local", "admin", "s3cret", http_client=http_client)
        try:
            with pytest.raises(GatewayError):
                await cp.list_processes()
        finally:
            await cp.close()

    @pytest.mark.asyncio
    async def test_create_process_posts_wire_config(self, client, stub):
        config = build_ingest_config(STREAM_UUID, "rtsp://cam.local/stream1", "http://cp.local")
        stub.responses = [(200, config.to_wire())]

        process = await client.create_process(config)

        request = stub.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v3/process"
        body = json.loads(request.content)
        assert body["id"] == PROCESS_ID
        assert body["reference"] == STREAM_UUID
        assert body["input"][0]["address"] == "rtsp://cam.local/stream1"
        assert process.id == PROCESS_ID

    @pytest.mark.asyncio
    async def test_create_process_with_empty_response(self, client, stub):
        config = build_ingest_config(STREAM_UUID, "rtsp://cam.local/stream1", "http://cp.local")
        stub.responses = [(200, "")]
        process = await client.create_process(config)
        assert process.id == PROCESS_ID

    @pytest.mark.asyncio
    async def test_create_process_requires_id(self, client, stub):
        with pytest.raises(ValidationError):
            await client.create_process(ProcessConfig(id=""))
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_state_and_delete_paths(self, client, stub):
        stub.responses = [
            (200, {"exec": "running", "runtime_seconds": 12, "progress": {"fps": 25.0}}),
            (200, ""),
        ]
        state = await client.get_process_state(PROCESS_ID)
        await client.delete_process(PROCESS_ID)

        assert state.exec == "running"
        assert stub.requests[0].url.path == f"/api/v3/process/{PROCESS_ID}/state"
        assert stub.requests[1].method == "DELETE"
        assert stub.requests[1].url.path == f"/api/v3/process/{PROCESS_ID}"

    @pytest.mark.asyncio
    async def test_command_process(self, client, stub):
        stub.responses = [(200, "")]
        await client.command_process(PROCESS_ID, "stop")
        request = stub.requests[0]
        assert request.method == "PUT"
        assert request.url.path == f"/api/v3/process/{PROCESS_ID}/command"
        assert json.loads(request.content) == {"command": "stop"}

    @pytest.mark.asyncio
    async def test_unknown_command_rejected_locally(self, client, stub):
        with pytest.raises(ValidationError):
            await client.command_process(PROCESS_ID, "reload; rm -rf /")
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_set_metadata(self, client, stub):
        stub.responses = [(200, "")]
        await client.set_metadata(PROCESS_ID, "restreamer-ui", {"meta": {"name": "Lobby"}})
        request = stub.requests[0]
        assert request.url.path == f"/api/v3/process/{PROCESS_ID}/metadata/restreamer-ui"
        assert json.loads(request.content) == {"meta": {"name": "Lobby"}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("process_id", ["", "   "])
    async def test_empty_process_id_rejected(self, client, stub, process_id):
        with pytest.raises(ValidationError):
            await client.get_process(process_id)
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_null_lists_decode_as_empty(self, client, stub):
        stub.responses = [
            (200, [{
                "id": PROCESS_ID,
                "reference": STREAM_UUID,
                "input": None,
                "output": [{"id": "output_0", "address": "{memfs}/x.m3u8", "options": None}],
                "options": None,
            }]),
            (200, {"exec": "finished", "progress": {"inputs": None, "outputs": None}}),
        ]

        processes = await client.list_processes()
        state = await client.get_process_state(PROCESS_ID)

        assert processes[0].input == []
        assert processes[0].options == []
        assert processes[0].output[0].options == []
        assert state.progress.inputs == []
        assert state.progress.outputs == []

    @pytest.mark.asyncio
    async def test_null_progress_decodes_as_empty(self, client, stub):
        stub.responses = [(200, {"exec": "finished", "progress": None})]
        state = await client.get_process_state(PROCESS_ID)
        assert state.progress.fps == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        [{"reference": "missing-id"}],
        [{"id": PROCESS_ID, "options": "not-a-list"}],
        {"id": PROCESS_ID},
    ])
    async def test_unexpected_payload_is_a_control_plane_error(self, client, stub, body):
        stub.responses = [(200, body)]
        with pytest.raises(ControlPlaneError) as exc_info:
            await client.list_processes()
        assert exc_info.value.status_code == 502
        assert map_control_plane_error(exc_info.value) == (502, "control plane unavailable")
