"""Simulated Scientific Camera.

Frame source producing synthetic frames drawn from the detector noise model
(Poisson photo-electrons, Gaussian read noise, linear ADC with bias). Used to
exercise acquisition and calibration without hardware.

Like a real frame grabber, the camera writes frames into a small ring of
buffers that are recycled: an array returned by wait() is overwritten a few
frames later and must be copied to be kept.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import dataclasses
import logging
import time

import numpy as np

from scicam import (
    ROI,
    AcquisitionTimeoutError,
    InvalidArgumentError,
    PixelFormat,
    SessionActiveError,
    check_roi,
    check_speed,
)


if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray

log = logging.getLogger(__name__)


@dataclasses.dataclass(kw_only=True, slots=True)
class SimStats:
    """Counters for the current session."""

    frames_read: int = 0  # Frames delivered by wait()
    frames_released: int = 0
    timeouts: int = 0


@dataclasses.dataclass(kw_only=True, slots=True, weakref_slot=True)
class SimulatedCamera:
    """Synthetic camera implementing the frame source contract."""

    full_width: int = 64  # Sensor width (columns)
    full_height: int = 48  # Sensor height (rows)
    roi: ROI | None = None  # Full sensor when not given
    pixel_format: PixelFormat = dataclasses.field(
        default_factory=lambda: PixelFormat.mono(16)
    )
    fps: float = 25.0  # Frames per second
    exposure: float = 0.02  # Exposure time (s)
    flux: float = 2000.0  # Illumination (photo-electrons / pixel / s)
    dark_current: float = 50.0  # Photo-electrons / pixel / s
    bias: float = 100.0  # ADU
    gain: float = 2.0  # Photo-electrons per ADU
    read_noise: float = 5.0  # Photo-electrons RMS
    shutter_open: bool = True  # False for dark and bias frames
    timeout_after: int | None = None  # Frames delivered before waits time out
    seed: int | None = 1234
    streaming: bool = False
    stats: SimStats = dataclasses.field(default_factory=SimStats)
    _rng: Any = dataclasses.field(default=None, repr=False)
    _buffers: list[Any] = dataclasses.field(default_factory=list, repr=False)
    _held: int | None = dataclasses.field(default=None, repr=False)
    _t0: float = dataclasses.field(default=0.0, repr=False)

    def __post_init__(self) -> None:
        check_roi(self.get_roi(), self.full_width, self.full_height)
        check_speed(self.fps, self.exposure)
        self._rng = np.random.default_rng(self.seed)

    # Frame source contract

    def start(self, dtype: DTypeLike, nbuffers: int) -> None:
        """Start continuous acquisition into `nbuffers` recycled buffers."""
        if self.streaming:
            raise SessionActiveError("acquisition already running")
        dtype = np.dtype(dtype)
        if dtype.kind not in "uif":
            raise InvalidArgumentError(f"unsupported element type ({dtype})")
        if nbuffers < 1:
            raise InvalidArgumentError(f"invalid number of buffers ({nbuffers})")
        shape = self.get_roi().shape
        self._buffers = [np.zeros(shape, dtype=dtype) for _ in range(nbuffers)]
        self._held = None
        self.stats = SimStats()
        self._t0 = time.monotonic()
        self.streaming = True
        log.debug("Simulated acquisition started: %s, %d buffers", dtype, nbuffers)

    def wait(self, timeout: float) -> tuple[NDArray[Any], float]:
        """Return the next frame and its timestamp (s)."""
        if not self.streaming:
            raise RuntimeError("Not streaming")
        if self._held is not None:
            raise RuntimeError("Previous frame was not released")
        n = self.stats.frames_read
        if self.timeout_after is not None and n >= self.timeout_after:
            self.stats.timeouts += 1
            raise AcquisitionTimeoutError(f"no frame within {timeout:.3f} s")
        index = n % len(self._buffers)
        buf = self._buffers[index]
        buf[...] = self._to_storage(self.expose(), buf.dtype)
        self._held = index
        self.stats.frames_read += 1
        return buf, self._t0 + n / self.fps

    def release(self) -> None:
        """Return the last frame buffer to the ring."""
        if self._held is None:
            raise RuntimeError("No frame to release")
        self._held = None
        self.stats.frames_released += 1

    def stop(self) -> None:
        """Stop acquisition."""
        self._end()

    def abort(self) -> None:
        """Abort acquisition."""
        self._end()

    def get_speed(self) -> tuple[float, float]:
        """Return (frames per second, exposure time in seconds)."""
        return self.fps, self.exposure

    # Optional capabilities

    def set_speed(self, fps: float, exposure: float) -> None:
        check_speed(fps, exposure)
        self.fps = float(fps)
        self.exposure = float(exposure)

    def get_full_size(self) -> tuple[int, int]:
        return self.full_width, self.full_height

    def get_roi(self) -> ROI:
        if self.roi is None:
            self.roi = ROI.full(self.full_width, self.full_height)
        return self.roi

    def set_roi(self, roi: ROI) -> None:
        if self.streaming:
            raise RuntimeError("Cannot change ROI while streaming")
        check_roi(roi, self.full_width, self.full_height)
        self.roi = roi

    def get_pixel_format(self) -> PixelFormat:
        return self.pixel_format

    def get_gain(self) -> float:
        return self.gain

    def set_gain(self, gain: float) -> None:
        if not gain > 0.0:
            raise InvalidArgumentError(f"invalid gain ({gain} e-/ADU)")
        self.gain = float(gain)

    def get_bias(self) -> float:
        return self.bias

    def set_bias(self, bias: float) -> None:
        self.bias = float(bias)

    # Detector model

    def expose(self) -> NDArray[np.float64]:
        """Draw one frame of raw values (ADU, before quantization)."""
        shape = self.get_roi().shape
        s = 1.0 if self.shutter_open else 0.0
        mean_e = max((s * self.flux + self.dark_current) * self.exposure, 0.0)
        electrons = self._rng.poisson(mean_e, size=shape).astype(np.float64)
        if self.read_noise > 0.0:
            electrons += self._rng.normal(0.0, self.read_noise, size=shape)
        return electrons / self.gain + self.bias

    def _to_storage(self, adu: NDArray[np.float64], dtype: np.dtype) -> NDArray[Any]:
        """Quantize and clip to the range of the storage type."""
        if dtype.kind == "f":
            return adu
        info = np.iinfo(dtype)
        return np.clip(np.rint(adu), info.min, info.max)

    def _end(self) -> None:
        if self.streaming:
            log.debug(
                "Simulated acquisition ended after %d frame(s)", self.stats.frames_read
            )
        self.streaming = False
        self._held = None
        self._buffers = []
