"""Post-processing stage framework: stream descriptions, requests, the stage base class and registry."""

from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, TypeVar

import numpy as np

MAIN = "main"
LORES = "lores"
STILL = "still"


@dataclass(frozen=True)
class StreamInfo:
    """Geometry of one image stream; stride is the length of a Y row in bytes."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: str = "YUV420"


@dataclass
class Streams:
    """The streams an application has configured; absent streams are None."""

    main: StreamInfo | None = None
    lores: StreamInfo | None = None
    still: StreamInfo | None = None


@dataclass
class StreamConfiguration:
    """Configuration requested for a stream before the camera is started."""

    width: int = 0
    height: int = 0
    pixel_format: str = "YUV420"
    buffer_count: int = 1


@dataclass
class CompletedRequest:
    """A finished camera request: its frame buffers, keyed by stream role, and metadata."""

    sequence: int = 0
    buffers: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    post_process_metadata: dict[str, Any] = field(default_factory=dict)


class PostProcessingStage(abc.ABC):
    """Base class for a stage that inspects or modifies completed requests.

    The base class keeps track of its lifecycle: the parameters it was given,
    the use case it was last adjusted for, the streams it was configured with
    and whether the camera is running.
    """

    name: str = ""
    params: Mapping[str, Any] | None = None
    use_case: str | None = None
    streams: Streams | None = None
    running: bool = False

    def read(self, params: Mapping[str, Any]) -> None:
        """Read the stage's parameters."""
        self.params = params

    def adjust_config(self, use_case: str, config: StreamConfiguration) -> None:
        """Adjust a stream configuration before the camera is configured."""
        self.use_case = use_case

    def configure(self, streams: Streams) -> None:
        """Prepare for the given streams."""
        self.streams = streams

    def start(self) -> None:
        """Called when the camera starts."""
        self.running = True

    @abc.abstractmethod
    def process(self, request: CompletedRequest) -> bool:
        """Process a request; return True if the request is to be dropped."""

    def stop(self) -> None:
        """Called when the camera stops."""
        self.running = False

    def teardown(self) -> None:
        """Release anything acquired in configure."""
        self.streams = None
        self.running = False


def _as_uint8(src: Any) -> np.ndarray:
    if isinstance(src, np.ndarray):
        return np.asarray(src, dtype=np.uint8).ravel()
    return np.frombuffer(src, dtype=np.uint8)


def yuv420_to_rgb(src: Any, src_info: StreamInfo, dst_info: StreamInfo) -> bytes:
    """Convert a YUV420 image to packed RGB, cropping from the centre of the source.

    The result holds dst_info.height rows of dst_info.stride bytes each.
    """
    if src_info.width < dst_info.width or src_info.height < dst_info.height:
        raise ValueError("destination image must not be larger than the source")
    if dst_info.stride < 3 * dst_info.width:
        raise ValueError("destination stride too small for RGB rows")
    data = _as_uint8(src)
    stride = src_info.stride
    y_size = src_info.height * stride
    uv_stride = stride // 2
    u_size = (src_info.height // 2) * uv_stride
    if data.size < y_size + 2 * u_size:
        raise ValueError("source buffer too small for its stream info")

    off_x = ((src_info.width - dst_info.width) // 2) & ~1
    off_y = ((src_info.height - dst_info.height) // 2) & ~1
    rows = np.arange(dst_info.height) + off_y
    cols = np.arange(dst_info.width) + off_x

    luma = data[rows[:, None] * stride + cols[None, :]].astype(np.float64)
    uv_index = y_size + (rows[:, None] // 2) * uv_stride + cols[None, :] // 2
    u = data[uv_index].astype(np.float64) - 128
    v = data[uv_index + u_size].astype(np.float64) - 128

    red = np.trunc(luma + 1.402 * v)
    green = np.trunc(luma - 0.345 * u - 0.714 * v)
    blue = np.trunc(luma + 1.771 * u)
    rgb = np.clip(np.stack([red, green, blue], axis=-1), 0, 255).astype(np.uint8)

    out = np.zeros((dst_info.height, dst_info.stride), dtype=np.uint8)
    out[:, : 3 * dst_info.width] = rgb.reshape(dst_info.height, 3 * dst_info.width)
    return out.tobytes()


def execution_time(f: Callable[..., Any], *args: Any, **kwargs: Any) -> float:
    """Run f(*args, **kwargs) and return how long it took, in microseconds."""
    start = time.perf_counter()
    f(*args, **kwargs)
    return (time.perf_counter() - start) * 1e6


_T = TypeVar("_T", bound=Callable[[], PostProcessingStage])

_STAGES: dict[str, Callable[[], PostProcessingStage]] = {}


def register_stage(name: str) -> Callable[[_T], _T]:
    """Decorator registering a stage factory (usually the class) under name."""

    def decorator(factory: _T) -> _T:
        _STAGES[name] = factory
        return factory

    return decorator


def get_post_processing_stages() -> Mapping[str, Callable[[], PostProcessingStage]]:
    """Return a read-only view of the registered stage factories."""
    return MappingProxyType(_STAGES)