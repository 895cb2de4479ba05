from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from .errors import CaptureError, InputError
from .utils import is_valid_url


def _read_only(headers: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(headers))


class CaptureRequest(BaseModel):
    """What to capture and how; immutable once accepted"""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    url: str
    width: int = Field(1920, ge=320, le=3840)
    height: int = Field(1080, ge=240, le=2160)
    full_page: bool = False
    quality: int = Field(80, ge=0, le=100)
    format: Literal["jpeg", "png"] = "jpeg"
    wait_for_selector: Optional[str] = None
    block_resources: Tuple[str, ...] = ()
    custom_headers: Mapping[str, str] = Field(default_factory=lambda: _read_only({}))
    fast_mode: bool = False

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("URL is required")
        if not is_valid_url(value):
            raise ValueError(f"not a valid http(s) URL: {value!r}")
        return value

    @field_validator("format", mode="before")
    @classmethod
    def _normalize_format(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.lower()
            return "jpeg" if value == "jpg" else value
        return value

    @field_validator("wait_for_selector")
    @classmethod
    def _blank_selector(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("custom_headers")
    @classmethod
    def _freeze_headers(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return _read_only(value)

    @field_serializer("custom_headers")
    def _dump_headers(self, value: Mapping[str, str]) -> Dict[str, str]:
        return dict(value)

    @classmethod
    def from_payload(cls, payload: Union["CaptureRequest", Dict[str, Any], None]) -> "CaptureRequest":
        """Validate a raw payload, raising InputError instead of ValidationError"""
        if isinstance(payload, cls):
            return payload
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}"
                for error in exc.errors()
            )
            raise InputError(problems, cause=exc) from exc


class CaptureProfile(BaseModel):
    """Timing, retry and header parameters resolved for one target host"""

    model_config = ConfigDict(frozen=True)

    name: str
    wait_time_ms: int = Field(ge=0)
    scroll_delay_ms: int = Field(ge=0)
    max_retries: int = Field(ge=1)
    headers: Mapping[str, str] = Field(default_factory=lambda: _read_only({}))

    @field_validator("headers")
    @classmethod
    def _freeze_headers(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return _read_only(value)

    @field_serializer("headers")
    def _dump_headers(self, value: Mapping[str, str]) -> Dict[str, str]:
        return dict(value)


class CaptureState(str, Enum):
    """Steps of the capture loop; a request starts IDLE and ends SUCCEEDED or FAILED"""

    IDLE = "idle"
    NAVIGATING = "navigating"
    WAITING = "waiting"
    SIMULATING = "simulating"
    CAPTURING = "capturing"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class CaptureAttempt:
    """One pass through the navigate/wait/capture loop"""

    number: int
    elapsed_ms: float
    raster: Optional[bytes] = None
    error: Optional[CaptureError] = None
    state: CaptureState = CaptureState.SUCCEEDED
    # States entered during this attempt, in order
    visited: Tuple[CaptureState, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.raster is not None


@dataclass
class CaptureResult:
    """Outcome of one capture request: a raster or a terminal failure"""

    url: str
    success: bool
    attempts: int = 0
    profile: Optional[str] = None
    user_agent: Optional[str] = None
    raster: Optional[bytes] = None
    format: str = "jpeg"
    width: Optional[int] = None
    height: Optional[int] = None
    full_page: bool = False
    quality: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None
    details: Optional[str] = None
    cause: Optional[BaseException] = None
    history: Tuple[CaptureState, ...] = ()

    @property
    def state(self) -> CaptureState:
        return CaptureState.SUCCEEDED if self.success else CaptureState.FAILED

    @property
    def content_type(self) -> str:
        return f"image/{self.format}"


@dataclass
class StorageOutcome:
    """Where the raster ended up: the object store, or inline"""

    storage: Literal["primary", "fallback"]
    url: Optional[str] = None
    download_url: Optional[str] = None
    pathname: Optional[str] = None
    data_url: Optional[str] = None
    error: Optional[str] = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScreenshotMetadata(_CamelModel):
    original_url: str
    timestamp: str
    dimensions: Dict[str, int]
    full_page: bool
    quality: Optional[int] = None
    format: str
    attempts: int
    user_agent: Optional[str] = None
    profile: Optional[str] = None
    storage: str
    filename: Optional[str] = None
    storage_error: Optional[str] = None


class ScreenshotSuccess(_CamelModel):
    success: Literal[True] = True
    url: Optional[str] = None
    download_url: Optional[str] = None
    screenshot: Optional[str] = None
    metadata: ScreenshotMetadata


class ScreenshotFailure(_CamelModel):
    success: Literal[False] = False
    error: str
    reason: str
    details: str


ScreenshotResponse = Union[ScreenshotSuccess, ScreenshotFailure]


class BulkScreenshotRequest(BaseModel):
    requests: List[Dict[str, Any]]
