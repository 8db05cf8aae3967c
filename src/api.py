from fastapi import FastAPI, HTTPException, Query, Response, Request, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import hmac
import logging
import time
from typing import List, Optional

import uvicorn

from config import settings, VERSION
from control_plane import ControlPlaneClient
from errors import (
    GatewayError,
    StreamGatewayError,
    UpstreamStatusError,
    ValidationError,
    map_control_plane_error,
)
from models import ProcessState, StreamCreateRequest, StreamDetail, StreamResponse
from process_config import (
    UI_METADATA_KEY,
    SNAPSHOT_SUFFIX,
    build_ingest_config,
    build_ui_metadata,
    extract_stream_name,
    extract_uuid,
    ingest_process_id,
    is_ingest_process,
    new_process_uuid,
    validate_source_url,
)
from rate_limiter import SlidingWindowRateLimiter
from stream_proxy import CORS_HEADERS, StreamProxy

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# Global control plane client, stream proxy and admission gate
control_plane = ControlPlaneClient(
    settings.CONTROL_PLANE_URL,
    settings.CONTROL_PLANE_USERNAME,
    settings.CONTROL_PLANE_PASSWORD,
    timeout=settings.CONTROL_PLANE_TIMEOUT,
    refresh_margin=settings.TOKEN_REFRESH_MARGIN,
    fallback_ttl=settings.TOKEN_FALLBACK_TTL,
)
stream_proxy = StreamProxy()
stream_create_limiter = SlidingWindowRateLimiter(
    settings.STREAM_CREATE_RATE_LIMIT, settings.STREAM_CREATE_RATE_WINDOW)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info(f"Stream gateway {VERSION} starting up (control plane: {control_plane.base_url})")

    yield

    logger.info("Stream gateway shutting down...")
    await stream_proxy.close()
    await control_plane.close()


app = FastAPI(
    title="stream gateway",
    version=VERSION,
    description="Control plane session broker and same-origin HLS proxy",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=None,
    openapi_url=settings.OPENAPI_URL,
)

# CORS for the management API; the stream proxy sets its own permissive headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list or ["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Accept", "Authorization", "Content-Type", "X-API-Key", "Range"],
    max_age=86400,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status and duration of every request"""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    remote = request.client.host if request.client else "unknown"
    # Path only: query strings may carry the API key or upstream URLs
    logger.info(
        f"{request.method} {request.url.path} {response.status_code} {duration_ms:.1f}ms remote={remote}")
    return response


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    apikey: Optional[str] = Query(
        None, description="API key (alternative to X-API-Key header)")
):
    """
    Verify the API key if API_KEY is configured.
    Key can be provided via:
    - X-API-Key header (recommended)
    - apikey query parameter

    If API_KEY is not set in environment, authentication is disabled.
    """
    if not settings.API_KEY:
        return True

    provided_key = x_api_key or apikey
    if not provided_key or not hmac.compare_digest(
            provided_key.encode(), settings.API_KEY.encode()):
        raise HTTPException(
            status_code=401,
            detail="invalid or missing API key",
        )
    return True


async def limit_stream_creation():
    """Global admission gate: every new stream is a real transcoding process"""
    if not stream_create_limiter.allow():
        logger.warning("Stream creation rejected by rate limiter")
        raise HTTPException(
            status_code=429, detail="rate limit exceeded, try again later")


def control_plane_http_error(e: Exception) -> HTTPException:
    """Translate a control plane failure into a sanitized HTTP error"""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    status, message = map_control_plane_error(e)
    return HTTPException(status_code=status, detail=message)


def build_stream_detail(stream_uuid: str, name: str, state: ProcessState) -> StreamDetail:
    return StreamDetail(
        stream_id=stream_uuid,
        name=name,
        hls_url=control_plane.hls_url(stream_uuid),
        status=state.exec,
        runtime_seconds=state.runtime_seconds,
        fps=state.progress.fps,
        bitrate_kbit=state.progress.bitrate_kbit,
        memory_mb=state.memory_bytes / (1024 * 1024),
        cpu_usage=state.cpu_usage,
    )


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": VERSION,
    }


# ============================================================================
# STREAM PROXY
# ============================================================================

@app.get("/stream-proxy")
async def proxy_stream(
    request: Request,
    url: Optional[str] = Query(
        None, description="Absolute http(s) URL of a manifest or segment")
):
    """
    Fetch an HLS manifest or segment and relay it with permissive CORS headers.

    Manifests are rewritten so that every segment and sub-playlist is also
    fetched through this endpoint.
    """
    try:
        proxied = await stream_proxy.fetch(
            url, user_agent=request.headers.get("user-agent"))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e), headers=CORS_HEADERS)
    except UpstreamStatusError as e:
        raise HTTPException(
            status_code=502,
            detail=e.message,
            headers={**CORS_HEADERS, "X-Upstream-Status": str(e.upstream_status)},
        )
    except GatewayError:
        raise HTTPException(
            status_code=502, detail="upstream request failed", headers=CORS_HEADERS)

    return Response(
        content=proxied.body,
        media_type=proxied.content_type,
        headers=proxied.headers,
    )


@app.options("/stream-proxy")
async def proxy_stream_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


# ============================================================================
# STREAM MANAGEMENT
# ============================================================================

@app.post(
    "/streams",
    status_code=201,
    response_model=StreamResponse,
    dependencies=[Depends(verify_api_key), Depends(limit_stream_creation)],
)
async def create_stream(request: StreamCreateRequest):
    """Create an RTSP -> HLS ingest process visible in the control plane UI"""
    name = request.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="stream name is required")
    try:
        validate_source_url(request.rtsp_url)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    stream_uuid = new_process_uuid()
    process_id = ingest_process_id(stream_uuid)
    config = build_ingest_config(stream_uuid, request.rtsp_url, control_plane.base_url)

    try:
        await control_plane.create_process(config)
    except StreamGatewayError as e:
        logger.error(f"Create stream failed for process {process_id}: {e}")
        raise control_plane_http_error(e)

    ui_metadata = build_ui_metadata(name, request.rtsp_url, stream_uuid)
    try:
        await control_plane.set_metadata(process_id, UI_METADATA_KEY, ui_metadata.to_wire())
    except StreamGatewayError as e:
        # The stream still produces HLS; it just won't show up in the UI
        logger.error(f"Setting UI metadata failed for process {process_id} (stream still functional): {e}")

    logger.info(f"Created stream {stream_uuid} ({name})")
    return StreamResponse(
        stream_id=stream_uuid,
        name=name,
        hls_url=control_plane.hls_url(stream_uuid),
        status="created",
    )


@app.get("/streams", response_model=List[StreamDetail], dependencies=[Depends(verify_api_key)])
async def list_streams():
    """List ingest streams (snapshots and other auxiliary processes are skipped)"""
    try:
        processes = await control_plane.list_processes()
    except StreamGatewayError as e:
        raise control_plane_http_error(e)

    ingest = [p for p in processes if is_ingest_process(p.id)]
    states = await asyncio.gather(
        *(control_plane.get_process_state(p.id) for p in ingest),
        return_exceptions=True,
    )

    streams = []
    for process, state in zip(ingest, states):
        stream_uuid = process.reference or extract_uuid(process.id)
        name = extract_stream_name(process)
        if isinstance(state, StreamGatewayError):
            logger.debug(f"State unavailable for process {process.id}: {state}")
            streams.append(StreamDetail(
                stream_id=stream_uuid,
                name=name,
                hls_url=control_plane.hls_url(stream_uuid),
                status="unknown",
            ))
            continue
        if isinstance(state, BaseException):
            raise state
        streams.append(build_stream_detail(stream_uuid, name, state))
    return streams


@app.get("/streams/{stream_id}", response_model=StreamDetail, dependencies=[Depends(verify_api_key)])
async def get_stream(stream_id: str):
    """Get a single stream's runtime state. ``stream_id`` is the bare UUID."""
    process_id = ingest_process_id(stream_id)
    try:
        process = await control_plane.get_process(process_id)
        state = await control_plane.get_process_state(process_id)
    except StreamGatewayError as e:
        raise control_plane_http_error(e)
    return build_stream_detail(stream_id, extract_stream_name(process), state)


@app.delete("/streams/{stream_id}", status_code=204, dependencies=[Depends(verify_api_key)])
async def delete_stream(stream_id: str):
    process_id = ingest_process_id(stream_id)
    try:
        await control_plane.delete_process(process_id)
    except StreamGatewayError as e:
        raise control_plane_http_error(e)

    # The UI may have attached a snapshot process; it legitimately may not
    # exist, so this is best-effort: not retried and not reported.
    try:
        await control_plane.delete_process(process_id + SNAPSHOT_SUFFIX)
    except StreamGatewayError as e:
        logger.debug(f"Snapshot cleanup skipped for {process_id}: {e}")

    logger.info(f"Deleted stream {stream_id}")
    return Response(status_code=204)


@app.post("/streams/{stream_id}/restart", response_model=StreamResponse, dependencies=[Depends(verify_api_key)])
async def restart_stream(stream_id: str):
    """Stop then start a stream's process"""
    process_id = ingest_process_id(stream_id)
    try:
        await control_plane.command_process(process_id, "stop")
    except StreamGatewayError as e:
        raise control_plane_http_error(e)

    # Give FFmpeg a moment to shut down cleanly
    await asyncio.sleep(settings.RESTART_DELAY)

    try:
        await control_plane.command_process(process_id, "start")
    except StreamGatewayError as e:
        logger.error(f"Restart stream: start failed for process {process_id}: {e}")
        raise control_plane_http_error(e)

    return StreamResponse(
        stream_id=stream_id,
        name="",
        hls_url=control_plane.hls_url(stream_id),
        status="restarting",
    )


def main():
    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.RELOAD,
    )


if __name__ == "__main__":
    main()
