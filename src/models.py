"""
Wire models for the control plane API and the gateway's own responses.

Field names and nesting of the control plane shapes are a wire contract;
they must match what the control plane accepts byte for byte.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _none_as_list(value: Any) -> Any:
    # The control plane encodes empty lists as null
    return [] if value is None else value


# ============================================================================
# PROCESS DEFINITION
# ============================================================================

class ProcessCleanup(BaseModel):
    pattern: str
    max_files: int = 0
    max_file_age_seconds: int = 0
    purge_on_delete: bool = False


class ProcessIO(BaseModel):
    id: str
    address: str
    options: List[str] = Field(default_factory=list)
    # Only outputs carry cleanup rules; omitted from the wire when unset
    cleanup: Optional[List[ProcessCleanup]] = None

    @field_validator("options", mode="before")
    @classmethod
    def null_options_as_empty(cls, value: Any) -> Any:
        return _none_as_list(value)


class ProcessLimits(BaseModel):
    cpu_usage: float = 0
    memory_mbytes: float = 0
    waitfor_seconds: int = 0


class ProcessConfig(BaseModel):
    """Payload for POST /api/v3/process"""
    id: str
    type: str = "ffmpeg"
    reference: str = ""
    input: List[ProcessIO] = Field(default_factory=list)
    output: List[ProcessIO] = Field(default_factory=list)
    options: List[str] = Field(default_factory=list)
    autostart: bool = False
    reconnect: bool = False
    reconnect_delay_seconds: int = 0
    stale_timeout_seconds: int = 0
    limits: Optional[ProcessLimits] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Process(BaseModel):
    """A process as reported by the control plane. Unknown fields are ignored."""
    id: str
    type: str = ""
    reference: str = ""
    input: List[ProcessIO] = Field(default_factory=list)
    output: List[ProcessIO] = Field(default_factory=list)
    options: List[str] = Field(default_factory=list)
    autostart: bool = False
    reconnect: bool = False
    reconnect_delay_seconds: int = 0
    stale_timeout_seconds: int = 0
    limits: Optional[ProcessLimits] = None
    # Kept loose: the UI writes whatever schema version it was built with
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("input", "output", "options", mode="before")
    @classmethod
    def null_lists_as_empty(cls, value: Any) -> Any:
        return _none_as_list(value)


# ============================================================================
# PROCESS STATE
# ============================================================================

class ProgressIO(BaseModel):
    id: str = ""
    address: str = ""
    index: int = 0
    stream: int = 0
    format: str = ""
    type: str = ""
    codec: str = ""
    coder: str = ""
    frame: int = 0
    fps: float = 0
    packet: int = 0
    pps: float = 0
    size_kb: int = 0
    bitrate_kbit: float = 0
    pix_fmt: str = ""
    q: float = 0
    width: int = 0
    height: int = 0


class ProcessProgress(BaseModel):
    inputs: List[ProgressIO] = Field(default_factory=list)
    outputs: List[ProgressIO] = Field(default_factory=list)
    frame: int = 0
    packet: int = 0
    fps: float = 0
    q: float = 0
    size_kb: int = 0
    time: float = 0
    bitrate_kbit: float = 0
    speed: float = 0
    drop: int = 0
    dup: int = 0

    @field_validator("inputs", "outputs", mode="before")
    @classmethod
    def null_lists_as_empty(cls, value: Any) -> Any:
        return _none_as_list(value)


class ProcessState(BaseModel):
    """Point-in-time runtime snapshot of a process"""
    order: str = ""
    exec: str = ""
    runtime_seconds: int = 0
    reconnect_seconds: int = 0
    last_logline: str = ""
    progress: ProcessProgress = Field(default_factory=ProcessProgress)
    memory_bytes: int = 0
    cpu_usage: float = 0

    @field_validator("progress", mode="before")
    @classmethod
    def null_progress_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


# ============================================================================
# AUTH & COMMANDS
# ============================================================================

class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str = ""


class RefreshResponse(BaseModel):
    access_token: str


class CommandRequest(BaseModel):
    command: str


# ============================================================================
# UI METADATA
# ============================================================================

class UIAuthor(BaseModel):
    name: str = ""
    description: str = ""


class UIMeta(BaseModel):
    name: str
    description: str = ""
    author: UIAuthor = Field(default_factory=UIAuthor)


class UIControlHLS(BaseModel):
    cleanup: bool = True
    lhls: bool = False
    listSize: int = 6
    master_playlist: bool = True
    segmentDuration: int = 2
    storage: str = "memfs"
    version: int = 3


class UIControlProcess(BaseModel):
    autostart: bool = True
    delay: int = 15
    low_delay: bool = False
    reconnect: bool = True
    staleTimeout: int = 30


class UIControlSnapshot(BaseModel):
    enable: bool = True
    interval: int = 60


class UIControlLimits(BaseModel):
    cpu_usage: float = 0
    memory_mbytes: float = 0
    waitfor_seconds: int = 5


class UIToggle(BaseModel):
    enable: bool = False


class UIControl(BaseModel):
    hls: UIControlHLS = Field(default_factory=UIControlHLS)
    process: UIControlProcess = Field(default_factory=UIControlProcess)
    snapshot: UIControlSnapshot = Field(default_factory=UIControlSnapshot)
    limits: UIControlLimits = Field(default_factory=UIControlLimits)
    rtmp: UIToggle = Field(default_factory=UIToggle)
    srt: UIToggle = Field(default_factory=UIToggle)


class UICodecMapping(BaseModel):
    filter: Optional[List[str]] = None
    global_: List[str] = Field(default_factory=list, alias="global")
    local: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class UICodecConfig(BaseModel):
    coder: str
    mapping: UICodecMapping = Field(default_factory=UICodecMapping)
    settings: Dict[str, str] = Field(default_factory=dict)


class UIFilterConfig(BaseModel):
    graph: str = ""
    settings: Dict[str, Any] = Field(default_factory=dict)


class UIProfileTrack(BaseModel):
    source: int = 0
    stream: int = 0
    decoder: UICodecConfig
    encoder: UICodecConfig
    filter: UIFilterConfig = Field(default_factory=UIFilterConfig)
    # Only set on the audio track
    coder: Optional[str] = None


class UIProfileCustom(BaseModel):
    selected: bool = False
    stream: int = 0


class UIProfile(BaseModel):
    video: UIProfileTrack
    audio: UIProfileTrack
    custom: UIProfileCustom = Field(default_factory=UIProfileCustom)


class UIStream(BaseModel):
    index: int
    stream: int
    type: str
    codec: str
    width: Optional[int] = None
    height: Optional[int] = None
    channels: Optional[int] = None
    layout: Optional[str] = None
    sampling_hz: Optional[int] = None
    pix_fmt: Optional[str] = None
    url: Optional[str] = None


class UISourceInput(BaseModel):
    address: str
    # Mix of strings and numbers, mirroring what the UI stores
    options: List[Any] = Field(default_factory=list)


class UISource(BaseModel):
    type: str = ""
    inputs: List[UISourceInput] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    streams: List[UIStream] = Field(default_factory=list)


class UIMetadata(BaseModel):
    """Metadata blob that makes a process visible and editable in the dashboard UI"""
    version: str
    meta: UIMeta
    control: UIControl = Field(default_factory=UIControl)
    license: str = "CC BY 4.0"
    player: Dict[str, Any] = Field(default_factory=dict)
    profiles: List[UIProfile] = Field(default_factory=list)
    sources: List[UISource] = Field(default_factory=list)
    streams: List[UIStream] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================================================
# GATEWAY RESPONSES
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StreamResponse(_CamelModel):
    """Response for stream creation and restart"""
    stream_id: str
    name: str
    hls_url: str
    status: str


class StreamDetail(_CamelModel):
    """A single ingest stream with its current runtime state"""
    stream_id: str
    name: str
    hls_url: str
    status: str
    runtime_seconds: int = 0
    fps: Optional[float] = None
    bitrate_kbit: Optional[float] = None
    memory_mb: Optional[float] = None
    cpu_usage: Optional[float] = None


class StreamCreateRequest(BaseModel):
    name: str = ""
    rtsp_url: str = Field("", alias="rtspUrl")

    model_config = ConfigDict(populate_by_name=True)
