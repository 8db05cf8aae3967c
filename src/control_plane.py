"""
Client for the process-control (control plane) API.

Every call acquires a token from the SessionManager, sends an authenticated
JSON request and decodes the response. A 401 drops the cached access token
and the call is replayed exactly once with a freshly acquired token.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError as ModelValidationError

from errors import ControlPlaneError, GatewayError, ValidationError
from models import CommandRequest, Process, ProcessConfig, ProcessState
from session_manager import SessionManager

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v3"
PROCESS_COMMANDS = ("start", "stop")
# Error bodies are forwarded to callers; keep them short
MAX_ERROR_MESSAGE_LENGTH = 512


def _decode(model, data: Any):
    """Validate a control plane payload, treating a schema mismatch as a bad response"""
    try:
        return model.model_validate(data)
    except ModelValidationError as e:
        logger.error(f"Unexpected {model.__name__} payload from control plane: {e.error_count()} errors")
        raise ControlPlaneError(502, "invalid response from control plane") from e


def _require_id(process_id: str) -> str:
    if not process_id or not process_id.strip():
        raise ValidationError("process id is required")
    # Keep ids inside a single path segment
    return quote(process_id, safe=":")


class ControlPlaneClient:
    """Authenticated CRUD/command client for control plane processes"""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 15.0,
        refresh_margin: float = 60.0,
        fallback_ttl: float = 300.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.session = SessionManager(
            self.http_client,
            self.base_url,
            username,
            password,
            refresh_margin=refresh_margin,
            fallback_ttl=fallback_ttl,
        )

    def hls_url(self, stream_uuid: str) -> str:
        """Public HLS URL for a stream identifier"""
        return f"{self.base_url}/memfs/{stream_uuid}.m3u8"

    async def close(self):
        await self.http_client.aclose()

    # ------------------------------------------------------------------
    # Process API
    # ------------------------------------------------------------------

    async def create_process(self, config: ProcessConfig) -> Process:
        if not config.id:
            raise ValidationError("process config requires an id")
        data = await self._request("POST", f"{API_PREFIX}/process", config.to_wire())
        if not data:
            return _decode(Process, config.to_wire())
        return _decode(Process, data)

    async def get_process(self, process_id: str) -> Process:
        path = f"{API_PREFIX}/process/{_require_id(process_id)}"
        return _decode(Process, await self._request("GET", path))

    async def list_processes(self) -> List[Process]:
        data = await self._request("GET", f"{API_PREFIX}/process")
        return [_decode(Process, item) for item in (data or [])]

    async def get_process_state(self, process_id: str) -> ProcessState:
        path = f"{API_PREFIX}/process/{_require_id(process_id)}/state"
        return _decode(ProcessState, await self._request("GET", path) or {})

    async def delete_process(self, process_id: str) -> None:
        await self._request("DELETE", f"{API_PREFIX}/process/{_require_id(process_id)}")

    async def command_process(self, process_id: str, command: str) -> None:
        """Send a start/stop command to a process"""
        if command not in PROCESS_COMMANDS:
            raise ValidationError(f"unsupported process command: {command!r}")
        path = f"{API_PREFIX}/process/{_require_id(process_id)}/command"
        await self._request("PUT", path, CommandRequest(command=command).model_dump())

    async def set_metadata(self, process_id: str, key: str, value: Dict[str, Any]) -> None:
        """Store a metadata object on a process under ``key``"""
        if not key:
            raise ValidationError("metadata key is required")
        path = f"{API_PREFIX}/process/{_require_id(process_id)}/metadata/{quote(key, safe='')}"
        await self._request("PUT", path, value)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, body: Optional[Any] = None) -> Any:
        """Send an authenticated request, replaying it once after a 401."""
        response = None
        for attempt in range(2):
            token = await self.session.acquire_token()
            response = await self._send(method, path, body, token)
            if response.status_code != 401:
                break
            await self.session.invalidate(token)
            if attempt == 0:
                logger.info(f"Control plane rejected token for {method} {path}, retrying once")

        if response.status_code >= 400:
            message = response.text.strip()[:MAX_ERROR_MESSAGE_LENGTH]
            logger.warning(f"Control plane {method} {path} failed with status {response.status_code}")
            raise ControlPlaneError(response.status_code, message)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Undecodable control plane response for {method} {path}")
            raise ControlPlaneError(502, "invalid response from control plane") from e

    async def _send(self, method: str, path: str, body: Optional[Any], token: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        try:
            return await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Control plane {method} {path} request failed: {type(e).__name__}")
            raise GatewayError("control plane request failed") from e
