"""Scientific Camera Core.

Value types, error taxonomy, and the frame-source capability contract shared
by the acquisition loop and the calibration pipeline.

A frame source is any object exposing the operations listed in
REQUIRED_OPERATIONS:

- start(dtype, nbuffers): open a continuous acquisition session
- wait(timeout) -> (frame, timestamp): next frame, raises TimeoutError
- release(): hand the last frame buffer back to the source
- stop(): end acquisition after the current frame
- abort(): end acquisition immediately
- get_speed() -> (fps, exposure): frame rate (Hz) and exposure time (s)

Hardware backends are not part of this module; see simcam.py for a
synthetic one.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import dataclasses
import logging
import math
import weakref

import numpy as np


if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray

log = logging.getLogger(__name__)

# Operations every frame source must implement
REQUIRED_OPERATIONS = ("start", "wait", "release", "stop", "abort", "get_speed")
# Operations a frame source may implement, passed through by CameraAdapter
OPTIONAL_OPERATIONS = (
    "set_speed",
    "get_full_size",
    "get_roi",
    "set_roi",
    "get_pixel_format",
    "set_pixel_format",
    "get_gain",
    "set_gain",
    "get_bias",
    "set_bias",
    "get_gamma",
    "set_gamma",
    "get_decimation",
    "set_decimation",
)


# =============================================================================
# Errors
# =============================================================================


class CameraError(Exception):
    """Base class for all camera and calibration errors."""

    pass


class AcquisitionTimeoutError(CameraError, TimeoutError):
    """Raised when waiting for a frame exceeds the allotted time."""

    pass


class UnsupportedCapabilityError(CameraError, NotImplementedError):
    """Raised when a frame source lacks a required operation."""

    def __init__(self, missing: tuple[str, ...], source: Any = None) -> None:
        self.missing = tuple(missing)
        name = type(source).__name__ if source is not None else "frame source"
        super().__init__(f"{name} does not implement: {', '.join(self.missing)}")


class ShapeMismatchError(CameraError, ValueError):
    """Raised when array dimensions or collection lengths disagree."""

    pass


class SingularSystemError(CameraError, ArithmeticError):
    """Raised when calibration normal equations cannot be inverted."""

    pass


class InvalidArgumentError(CameraError, ValueError):
    """Raised for out-of-range counts, timeouts, speeds or ROIs."""

    pass


class SessionActiveError(CameraError, RuntimeError):
    """Raised when starting a second acquisition session on one device."""

    pass


# =============================================================================
# Frames
# =============================================================================


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True, eq=False)
class Frame:
    """One acquired image with its arrival time and sequence index."""

    data: NDArray[Any]
    timestamp: float  # Arrival time in seconds
    index: int  # 0-based ordinal among processed (non-skipped) frames


# =============================================================================
# Region of Interest
# =============================================================================


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class ROI:
    """Region of interest, in macro-pixels.

    Offsets are in sensor pixels; width and height count macro-pixels, each
    covering xsub × ysub sensor pixels.
    """

    xoff: int = 0  # Horizontal offset (sensor pixels)
    yoff: int = 0  # Vertical offset (sensor pixels)
    width: int  # Number of macro-pixel columns
    height: int  # Number of macro-pixel rows
    xsub: int = 1  # Horizontal sub-sampling / binning factor
    ysub: int = 1  # Vertical sub-sampling / binning factor

    @classmethod
    def full(cls, width: int, height: int) -> ROI:
        """ROI with zero offsets and no sub-sampling."""
        return cls(width=width, height=height)

    @property
    def shape(self) -> tuple[int, int]:
        """Array shape (rows, columns) of frames read with this ROI."""
        return (self.height, self.width)


def check_roi(roi: ROI, fullwidth: int, fullheight: int) -> None:
    """Validate a region of interest against the sensor size.

    Args:
        roi: Region of interest.
        fullwidth: Sensor width in pixels.
        fullheight: Sensor height in pixels.

    Raises:
        InvalidArgumentError: Naming the first violated bound.
    """
    if fullwidth < 1:
        raise InvalidArgumentError(f"full width is too small ({fullwidth})")
    if fullheight < 1:
        raise InvalidArgumentError(f"full height is too small ({fullheight})")
    if roi.xsub < 1:
        raise InvalidArgumentError(f"horizontal sub-sampling is too small ({roi.xsub})")
    if roi.ysub < 1:
        raise InvalidArgumentError(f"vertical sub-sampling is too small ({roi.ysub})")
    if roi.xoff < 0:
        raise InvalidArgumentError(f"horizontal offset is too small ({roi.xoff})")
    if roi.yoff < 0:
        raise InvalidArgumentError(f"vertical offset is too small ({roi.yoff})")
    if roi.width < 1:
        raise InvalidArgumentError(f"width is too small ({roi.width})")
    if roi.height < 1:
        raise InvalidArgumentError(f"height is too small ({roi.height})")
    right = roi.xoff + roi.width * roi.xsub
    if right > fullwidth:
        raise InvalidArgumentError(
            f"horizontal offset or width are too large ({right} > {fullwidth})"
        )
    bottom = roi.yoff + roi.height * roi.ysub
    if bottom > fullheight:
        raise InvalidArgumentError(
            f"vertical offset or height are too large ({bottom} > {fullheight})"
        )


def replace_roi(roi: ROI, fullsize: tuple[int, int], **changes: int) -> ROI:
    """Return a copy of `roi` with `changes` applied, validated.

    Args:
        roi: Current region of interest.
        fullsize: Sensor size as (fullwidth, fullheight).
        **changes: Field values to replace.

    Returns:
        The new ROI. The original is never modified.
    """
    new = dataclasses.replace(roi, **changes)
    check_roi(new, *fullsize)
    return new


# =============================================================================
# Pixel Formats
# =============================================================================


class ColorKind(str, Enum):
    """Pixel format family."""

    MONO = "mono"
    RGB = "rgb"
    BGR = "bgr"
    XRGB = "xrgb"
    XBGR = "xbgr"
    RGBX = "rgbx"
    BGRX = "bgrx"
    BAYER = "bayer"
    YUV422 = "yuv422"


class BayerPattern(str, Enum):
    """Color filter array layout, top-left 2×2 cell read row by row."""

    RGGB = "rggb"
    GRBG = "grbg"
    GBRG = "gbrg"
    BGGR = "bggr"


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class PixelFormat:
    """Pixel format: a color family plus bits per pixel.

    `bits` is 0 when the format does not fix the number of bits.
    """

    kind: ColorKind
    bits: int = 0
    pattern: BayerPattern | None = None  # Bayer formats only

    def __post_init__(self) -> None:
        if self.bits < 0:
            raise InvalidArgumentError(f"invalid number of bits ({self.bits})")
        if (self.kind == ColorKind.BAYER) != (self.pattern is not None):
            raise InvalidArgumentError("a Bayer pattern is required for Bayer formats only")

    @classmethod
    def mono(cls, bits: int = 0) -> PixelFormat:
        return cls(kind=ColorKind.MONO, bits=bits)

    @classmethod
    def bayer(cls, pattern: BayerPattern | str, bits: int = 0) -> PixelFormat:
        return cls(kind=ColorKind.BAYER, bits=bits, pattern=BayerPattern(pattern))


YUV422 = PixelFormat(kind=ColorKind.YUV422, bits=16)


def _packed_dtype(order: str, width: int) -> np.dtype:
    """Structured dtype for packed color pixels, channel order as in memory."""
    return np.dtype([(c, f"u{width}") for c in order])


# Storage types with an exact equivalence, keyed by (kind, bits).
# Bayer formats map by bits regardless of pattern.
EQUIVALENT_DTYPES: dict[tuple[ColorKind, int], np.dtype] = {
    (ColorKind.MONO, 8): np.dtype(np.uint8),
    (ColorKind.MONO, 16): np.dtype(np.uint16),
    (ColorKind.MONO, 32): np.dtype(np.uint32),
    (ColorKind.BAYER, 8): np.dtype(np.uint8),
    (ColorKind.BAYER, 16): np.dtype(np.uint16),
    (ColorKind.BAYER, 32): np.dtype(np.uint32),
    (ColorKind.RGB, 24): _packed_dtype("rgb", 1),
    (ColorKind.RGB, 48): _packed_dtype("rgb", 2),
    (ColorKind.BGR, 24): _packed_dtype("bgr", 1),
    (ColorKind.BGR, 48): _packed_dtype("bgr", 2),
    (ColorKind.XRGB, 32): _packed_dtype("xrgb", 1),
    (ColorKind.XBGR, 32): _packed_dtype("xbgr", 1),
    (ColorKind.RGBX, 32): _packed_dtype("rgbx", 1),
    (ColorKind.BGRX, 32): _packed_dtype("bgrx", 1),
    (ColorKind.YUV422, 16): np.dtype([("y", "u1"), ("uv", "u1")]),
}


def bits_per_pixel(fmt: PixelFormat) -> int:
    """Number of bits per pixel, 0 if the format leaves it unspecified."""
    return fmt.bits


def equivalent_dtype(fmt: PixelFormat) -> np.dtype | None:
    """Closest storage dtype for a pixel format, None without exact match."""
    return EQUIVALENT_DTYPES.get((fmt.kind, fmt.bits))


def capture_dtype(source: Any) -> np.dtype:
    """Default element type for frames captured from `source`.

    Uses the equivalent dtype of the source's pixel format when the source
    exposes `get_pixel_format()`, and uint8 otherwise.
    """
    getter = getattr(source, "get_pixel_format", None)
    if getter is None:
        return np.dtype(np.uint8)
    dtype = equivalent_dtype(getter())
    return dtype if dtype is not None else np.dtype(np.uint8)


# =============================================================================
# Speed
# =============================================================================


def check_speed(fps: float, exposure: float) -> None:
    """Validate a frame rate (Hz) and exposure time (s).

    Raises:
        InvalidArgumentError: If either value is not finite and positive, or
            the exposure does not fit in one frame period.
    """
    if not math.isfinite(fps) or fps <= 0.0:
        raise InvalidArgumentError(f"invalid frame rate ({fps} Hz)")
    if not math.isfinite(exposure) or exposure <= 0.0:
        raise InvalidArgumentError(f"invalid exposure time ({exposure} s)")
    if fps * exposure >= 1.0:
        raise InvalidArgumentError("frame rate times exposure time is too high")


# =============================================================================
# Frame Source Contract
# =============================================================================


class FrameSource(Protocol):
    """Capabilities a camera backend provides to the acquisition loop.

    Only these are required. Optional operations such as get_roi, set_gain
    or set_decimation (see OPTIONAL_OPERATIONS) are looked up when used.
    """

    def start(self, dtype: DTypeLike, nbuffers: int) -> Any: ...

    def wait(self, timeout: float) -> tuple[NDArray[Any], float]: ...

    def release(self) -> None: ...

    def stop(self) -> None: ...

    def abort(self) -> None: ...

    def get_speed(self) -> tuple[float, float]: ...


def missing_operations(source: Any) -> tuple[str, ...]:
    """Names of required operations `source` does not provide."""
    return tuple(
        name
        for name in REQUIRED_OPERATIONS
        if not callable(getattr(source, name, None))
    )


def optional_operations(source: Any) -> tuple[str, ...]:
    """Names of optional operations `source` provides."""
    return tuple(
        name for name in OPTIONAL_OPERATIONS if callable(getattr(source, name, None))
    )


class CameraAdapter:
    """Checked wrapper around a frame source.

    The required operation set is verified when the adapter is built, so an
    incomplete backend fails before any hardware interaction. The adapter
    also refuses to start a second session on a device that already has one
    active; the registry is keyed by the wrapped device, so two adapters
    around the same device share it. Devices are held by weak reference and
    must support them, so an entry goes away with its device.

    Optional capabilities in OPTIONAL_OPERATIONS pass through to the device
    when it provides them.
    """

    _active: weakref.WeakValueDictionary[int, Any] = weakref.WeakValueDictionary()

    def __init__(self, device: Any) -> None:
        missing = missing_operations(device)
        if missing:
            raise UnsupportedCapabilityError(missing, device)
        self.device = device

    def __repr__(self) -> str:
        return f"CameraAdapter({self.device!r})"

    def __getattr__(self, name: str) -> Any:
        # Optional capabilities (get_roi, get_pixel_format, ...) pass through
        if name == "device":
            raise AttributeError(name)
        return getattr(self.device, name)

    @property
    def active(self) -> bool:
        return CameraAdapter._active.get(id(self.device)) is self.device

    def start(self, dtype: DTypeLike, nbuffers: int) -> Any:
        if self.active:
            raise SessionActiveError(f"acquisition already running on {self.device!r}")
        session = self.device.start(dtype, nbuffers)
        CameraAdapter._active[id(self.device)] = self.device
        log.debug("Session started on %r (%d buffers)", self.device, nbuffers)
        return session

    def wait(self, timeout: float) -> tuple[NDArray[Any], float]:
        return self.device.wait(timeout)

    def release(self) -> None:
        self.device.release()

    def stop(self) -> None:
        try:
            self.device.stop()
        finally:
            CameraAdapter._active.pop(id(self.device), None)

    def abort(self) -> None:
        try:
            self.device.abort()
        finally:
            CameraAdapter._active.pop(id(self.device), None)

    def get_speed(self) -> tuple[float, float]:
        return self.device.get_speed()


def as_frame_source(source: Any) -> CameraAdapter:
    """Wrap `source` in a CameraAdapter unless it already is one."""
    if isinstance(source, CameraAdapter):
        return source
    return CameraAdapter(source)
