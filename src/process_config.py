"""
Builds control plane process definitions for RTSP -> HLS ingest.

Processes use the dashboard UI naming convention (``restreamer-ui:ingest:<uuid>``)
so anything created here is equally manageable from the control plane's UI.
The display name is cosmetic; the UUID is the only identifier.

All builders are pure: no I/O and no shared state.
"""

import re
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from errors import ValidationError
from models import (
    Process,
    ProcessCleanup,
    ProcessConfig,
    ProcessIO,
    ProcessLimits,
    UICodecConfig,
    UICodecMapping,
    UIMeta,
    UIMetadata,
    UIProfile,
    UIProfileTrack,
    UISource,
    UISourceInput,
)

INGEST_PREFIX = "restreamer-ui:ingest:"
SNAPSHOT_SUFFIX = "_snapshot"
UI_METADATA_KEY = "restreamer-ui"
UI_METADATA_VERSION = "1.14.0"

# HLS output shape
SEGMENT_DURATION = 2
LIST_SIZE = 6

# Process supervision
RECONNECT_DELAY_SECONDS = 15
STALE_TIMEOUT_SECONDS = 30
WAITFOR_SECONDS = 5

# RTSP socket timeout in microseconds
RTSP_TIMEOUT_US = 5000000
THREAD_QUEUE_SIZE = 512

_SHELL_METACHARS = re.compile(r"[;|&`$(){}><\n\r\\]")
# Protocol prefixes that would let a source address reach beyond the network
FFMPEG_EXPLOIT_PATTERNS = [
    "concat:", "pipe:", "data:", "file:", "subfile:",
    "crypto:", "tee:", "zmq:", "tcp:", "udp:",
]


# ============================================================================
# IDENTIFIERS
# ============================================================================

def new_process_uuid() -> str:
    """Random 128-bit identifier in version-4 layout"""
    return str(uuid.uuid4())


def ingest_process_id(stream_uuid: str) -> str:
    return f"{INGEST_PREFIX}{stream_uuid}"


def is_ingest_process(process_id: str) -> bool:
    """True for ingest processes, False for snapshots, egress and anything else"""
    return process_id.startswith(INGEST_PREFIX) and not process_id.endswith(SNAPSHOT_SUFFIX)


def extract_uuid(process_id: str) -> str:
    if process_id.startswith(INGEST_PREFIX):
        stripped = process_id[len(INGEST_PREFIX):]
        if stripped.endswith(SNAPSHOT_SUFFIX):
            stripped = stripped[:-len(SNAPSHOT_SUFFIX)]
        return stripped
    return process_id


def extract_stream_name(process: Process) -> str:
    """Human readable name from UI metadata, falling back to reference then id"""
    ui_meta = (process.metadata or {}).get(UI_METADATA_KEY)
    if isinstance(ui_meta, dict):
        meta = ui_meta.get("meta")
        if isinstance(meta, dict) and meta.get("name"):
            return str(meta["name"])
    if process.reference:
        return process.reference
    return process.id


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_source_url(url: str) -> str:
    """
    Check that a source address is a plain RTSP/RTSPS URL.

    The address ends up on an FFmpeg command line on the control plane, so
    shell metacharacters and FFmpeg protocol prefixes are rejected outright.
    """
    if not url:
        raise ValidationError("RTSP URL is required")

    if _SHELL_METACHARS.search(url):
        raise ValidationError("URL contains invalid characters")

    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        raise ValidationError("malformed URL")

    scheme = parsed.scheme.lower()
    if scheme not in ("rtsp", "rtsps"):
        raise ValidationError(f"URL scheme must be rtsp:// or rtsps://, got {parsed.scheme!r}")

    if not hostname:
        raise ValidationError("URL must include a hostname")

    url_lower = url.lower()
    for pattern in FFMPEG_EXPLOIT_PATTERNS:
        if pattern in url_lower:
            raise ValidationError(f"URL contains disallowed pattern {pattern!r}")

    return url


# ============================================================================
# PROCESS CONFIG
# ============================================================================

def _input_options() -> List[str]:
    return [
        "-fflags", "+genpts",
        "-thread_queue_size", str(THREAD_QUEUE_SIZE),
        "-timeout", str(RTSP_TIMEOUT_US),
        "-rtsp_transport", "tcp",
    ]


def _output_options(stream_uuid: str, base_url: str) -> List[str]:
    opts = ["-dn", "-sn"]

    # Passthrough: first video track, optional first audio track
    opts.extend(["-map", "0:0", "-codec:v", "copy"])
    opts.extend(["-map", "0:1?", "-codec:a", "copy"])

    opts.extend(["-metadata", f"title={base_url}/{stream_uuid}/oembed.json"])
    opts.extend(["-metadata", "service_provider=datarhei-Restreamer"])

    # HLS muxer
    opts.extend(["-f", "hls"])
    opts.extend(["-start_number", "0"])
    opts.extend(["-hls_time", str(SEGMENT_DURATION)])
    opts.extend(["-hls_list_size", str(LIST_SIZE)])
    opts.extend(["-hls_flags", "append_list+delete_segments+program_date_time+temp_file"])
    opts.extend(["-hls_delete_threshold", "4"])
    opts.extend(["-hls_segment_filename", f"{{memfs}}/{stream_uuid}_{{outputid}}_%04d.ts"])
    opts.extend(["-master_pl_name", f"{stream_uuid}.m3u8"])
    opts.extend(["-master_pl_publish_rate", "2"])
    opts.extend(["-method", "PUT"])
    return opts


def _cleanup_rules(stream_uuid: str) -> List[ProcessCleanup]:
    return [
        # Everything belonging to the stream goes when the process is deleted
        ProcessCleanup(pattern=f"memfs:/{stream_uuid}**", purge_on_delete=True),
        ProcessCleanup(
            pattern=f"memfs:/{stream_uuid}_{{outputid}}.m3u8",
            max_file_age_seconds=24,
            purge_on_delete=True,
        ),
        ProcessCleanup(
            pattern=f"memfs:/{stream_uuid}_{{outputid}}_**.ts",
            max_files=12,
            max_file_age_seconds=24,
            purge_on_delete=True,
        ),
        ProcessCleanup(
            pattern=f"memfs:/{stream_uuid}.m3u8",
            max_file_age_seconds=24,
            purge_on_delete=True,
        ),
    ]


def build_ingest_config(stream_uuid: str, source_url: str, base_url: str) -> ProcessConfig:
    """Build the process definition for pulling ``source_url`` into an in-memory HLS output."""
    base_url = base_url.rstrip("/")
    return ProcessConfig(
        id=ingest_process_id(stream_uuid),
        type="ffmpeg",
        reference=stream_uuid,
        input=[ProcessIO(id="input_0", address=source_url, options=_input_options())],
        output=[
            ProcessIO(
                id="output_0",
                address=f"{{memfs}}/{stream_uuid}_{{outputid}}.m3u8",
                options=_output_options(stream_uuid, base_url),
                cleanup=_cleanup_rules(stream_uuid),
            )
        ],
        options=["-err_detect", "ignore_err", "-y"],
        autostart=True,
        reconnect=True,
        reconnect_delay_seconds=RECONNECT_DELAY_SECONDS,
        stale_timeout_seconds=STALE_TIMEOUT_SECONDS,
        limits=ProcessLimits(cpu_usage=0, memory_mbytes=0, waitfor_seconds=WAITFOR_SECONDS),
    )


# ============================================================================
# UI METADATA
# ============================================================================

def _passthrough_track(stream: int, flag: str, coder: Optional[str] = None) -> UIProfileTrack:
    return UIProfileTrack(
        source=0,
        stream=stream,
        coder=coder,
        decoder=UICodecConfig(coder="default", mapping=UICodecMapping()),
        encoder=UICodecConfig(coder="copy", mapping=UICodecMapping(local=[flag, "copy"])),
    )


def _source_settings(source_url: str, stream_uuid: str) -> Dict[str, Any]:
    return {
        "address": source_url,
        "mode": "pull",
        "rtsp": {
            "stimeout": RTSP_TIMEOUT_US,
            "udp": False,
        },
        "general": {
            "fflags": ["genpts"],
            "thread_queue_size": THREAD_QUEUE_SIZE,
            "probesize": 5000000,
            "analyzeduration": 5000000,
            "analyzeduration_http": 20000000,
            "analyzeduration_rtmp": 3000000,
            "max_probe_packets": 2500,
            "copyts": False,
            "start_at_zero": False,
            "avoid_negative_ts": "auto",
            "use_wallclock_as_timestamps": False,
        },
        "http": {
            "readNative": True,
            "forceFramerate": False,
            "framerate": 25,
            "userAgent": "",
            "referer": "",
            "http_proxy": "",
        },
        "username": "",
        "password": "",
        "push": {
            "name": stream_uuid,
            "type": "rtmp",
        },
    }


def build_ui_metadata(name: str, source_url: str, stream_uuid: str) -> UIMetadata:
    """Build the dashboard metadata blob mirroring ``build_ingest_config``."""
    return UIMetadata(
        version=UI_METADATA_VERSION,
        meta=UIMeta(name=name, description="Live from earth. Powered by datarhei Restreamer."),
        license="CC BY 4.0",
        profiles=[
            UIProfile(
                video=_passthrough_track(0, "-codec:v"),
                audio=_passthrough_track(1, "-codec:a", coder="copy"),
            )
        ],
        sources=[
            UISource(
                type="network",
                inputs=[
                    UISourceInput(
                        address=source_url,
                        options=[
                            "-fflags", "+genpts",
                            "-thread_queue_size", THREAD_QUEUE_SIZE,
                            "-timeout", RTSP_TIMEOUT_US,
                            "-rtsp_transport", "tcp",
                        ],
                    )
                ],
                settings=_source_settings(source_url, stream_uuid),
            ),
            # The UI expects an (empty) second source slot
            UISource(),
        ],
    )
