"""Frame acquisition loop and streaming statistics.

Drives a frame source through start / wait / release / abort cycles,
honoring skip counts, per-frame timeouts and the truncation policy, and
folds the frames into running sums without keeping them around.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, TypeVar

import contextlib
import logging
import math

import numpy as np

from calibration import CalibrationSample
from scicam import (
    AcquisitionTimeoutError,
    CameraAdapter,
    Frame,
    InvalidArgumentError,
    ShapeMismatchError,
    as_frame_source,
    capture_dtype,
)


if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import DTypeLike, NDArray

log = logging.getLogger(__name__)

S = TypeVar("S")

# Image buffers per session, independent of the number of frames requested
DEFAULT_BUFFER_COUNT = 4
# Default timeout = TIMEOUT_MARGIN + TIMEOUT_SCALE * (frames / fps + exposure)
TIMEOUT_MARGIN = 1.0
TIMEOUT_SCALE = 1.01


# =============================================================================
# Timeouts and Sessions
# =============================================================================


def default_timeout(source: Any, nframes: int = 1) -> float:
    """Default time (s) to wait for `nframes` frames from `source`.

    Recomputed from the current frame rate and exposure time on every call.

    Raises:
        InvalidArgumentError: If the speed cannot be queried or is invalid.
    """
    getter = getattr(source, "get_speed", None)
    if getter is None:
        raise InvalidArgumentError("cannot determine default timeout: no get_speed()")
    try:
        fps, exposure = getter()
    except NotImplementedError as err:
        raise InvalidArgumentError(f"cannot determine default timeout: {err}") from err
    fps = float(fps)
    exposure = float(exposure)
    if not (math.isfinite(fps) and fps > 0.0):
        raise InvalidArgumentError(f"cannot determine default timeout: frame rate {fps} Hz")
    if not (math.isfinite(exposure) and exposure >= 0.0):
        raise InvalidArgumentError(
            f"cannot determine default timeout: exposure {exposure} s"
        )
    return TIMEOUT_MARGIN + TIMEOUT_SCALE * (nframes / fps + exposure)


@contextlib.contextmanager
def acquisition_session(
    source: CameraAdapter,
    dtype: DTypeLike,
    nbuffers: int = DEFAULT_BUFFER_COUNT,
) -> Iterator[CameraAdapter]:
    """Run a continuous acquisition session, aborting it on exit.

    The session is aborted exactly once whatever the exit path. If the body
    raised, a failure of the abort itself is logged and attached to the
    original exception as a note; the original exception is what propagates.
    """
    source.start(dtype, nbuffers)
    try:
        yield source
    except BaseException as err:
        try:
            source.abort()
        except Exception as teardown_err:
            log.error("Abort failed during cleanup: %r", teardown_err)
            err.add_note(f"abort() also failed during cleanup: {teardown_err!r}")
        raise
    source.abort()
    log.debug("Session ended on %r", source)


# =============================================================================
# Acquisition Loop
# =============================================================================


def _check_counts(count: int, skip: int = 0) -> None:
    if count < 1:
        raise InvalidArgumentError(f"invalid number of frames to process ({count})")
    if skip < 0:
        raise InvalidArgumentError(f"invalid number of frames to skip ({skip})")


def _check_timeout(timeout: float) -> None:
    if not (math.isfinite(timeout) and timeout > 0.0):
        raise InvalidArgumentError(f"invalid timeout ({timeout} s)")


def _check_accumulator_dtype(dtype: DTypeLike) -> None:
    if np.dtype(dtype).kind != "f":
        raise InvalidArgumentError(
            f"accumulator type must be floating point ({np.dtype(dtype)})"
        )


def process_stream(
    source: Any,
    count: int,
    fold: Callable[[S, NDArray[Any], float, int], S],
    state: S,
    dtype: DTypeLike | None = None,
    *,
    skip: int = 0,
    timeout: float | None = None,
    truncate: bool = False,
    quiet: bool = False,
) -> tuple[S, int]:
    """Fold `count` frames from `source` into `state`.

    Each frame is passed as `state = fold(state, data, timestamp, ordinal)`
    and released right after; `data` is only valid during the call, so
    `fold` must copy anything it keeps. Ordinals start at 0.

    Args:
        source: Frame source (wrapped in a CameraAdapter if needed).
        count: Number of frames to process.
        fold: Update function.
        state: Initial state.
        dtype: Element type of the frames (defaults to the capture type).
        skip: Number of leading frames to discard.
        timeout: Per-frame timeout in seconds (defaults to default_timeout).
        truncate: On timeout, stop and return what was processed so far
            instead of raising.
        quiet: Do not log a warning when truncating.

    Returns:
        Tuple of (final state, number of processed frames).

    Raises:
        AcquisitionTimeoutError: On timeout when `truncate` is false.
        InvalidArgumentError: On bad arguments, before touching the source.
    """
    source = as_frame_source(source)
    _check_counts(count, skip)
    if timeout is None:
        timeout = default_timeout(source)
    _check_timeout(timeout)
    if dtype is None:
        dtype = capture_dtype(source)

    processed = 0
    with acquisition_session(source, dtype):
        while processed < count:
            try:
                data, timestamp = source.wait(timeout)
            except TimeoutError as err:
                if not truncate:
                    if isinstance(err, AcquisitionTimeoutError):
                        raise
                    raise AcquisitionTimeoutError(
                        f"no frame within {timeout:.3f} s after {processed} frame(s)"
                    ) from err
                if not quiet:
                    log.warning("Acquisition timeout after %d frame(s)", processed)
                break
            if skip > 0:
                skip -= 1
            else:
                state = fold(state, data, timestamp, processed)
                processed += 1
            source.release()
    return state, processed


def read_sequence(
    source: Any,
    count: int,
    dtype: DTypeLike | None = None,
    *,
    skip: int = 0,
    timeout: float | None = None,
    truncate: bool = False,
    quiet: bool = False,
) -> list[Frame]:
    """Read `count` frames from `source`.

    Every returned frame owns a private copy of its pixels. With `truncate`,
    fewer frames are returned if a wait times out.
    """
    frames: list[Frame] = []

    def _store(acc: list[Frame], data: NDArray[Any], timestamp: float, ordinal: int):
        acc.append(
            Frame(
                data=np.array(data, dtype=dtype, copy=True),
                timestamp=float(timestamp),
                index=ordinal,
            )
        )
        return acc

    if dtype is None:
        dtype = capture_dtype(source)
    frames, _ = process_stream(
        source,
        count,
        _store,
        frames,
        dtype,
        skip=skip,
        timeout=timeout,
        truncate=truncate,
        quiet=quiet,
    )
    return frames


def read_single(
    source: Any,
    dtype: DTypeLike | None = None,
    *,
    skip: int = 0,
    timeout: float | None = None,
) -> Frame:
    """Read one frame from `source`. A timeout always raises."""
    (frame,) = read_sequence(source, 1, dtype, skip=skip, timeout=timeout)
    return frame


# =============================================================================
# Streaming Statistics
# =============================================================================


def accumulate(state: Any, frame: NDArray[Any]) -> Any:
    """Add `frame` into running sums, in place.

    Args:
        state: Either an array of sums, or a (sums, sums_of_squares) pair of
            arrays with identical shapes.
        frame: Frame to add, same shape as the sums.

    Returns:
        `state`, updated.

    Raises:
        ShapeMismatchError: If the shapes differ.
    """
    if isinstance(state, tuple):
        sums, sums_sq = state
        if sums.shape != sums_sq.shape:
            raise ShapeMismatchError(
                f"sums {sums.shape} and squares {sums_sq.shape} differ in shape"
            )
    else:
        sums, sums_sq = state, None
    frame = np.asarray(frame)
    if frame.shape != sums.shape:
        raise ShapeMismatchError(
            f"frame shape {frame.shape} does not match accumulator {sums.shape}"
        )
    vals = frame.astype(sums.dtype, copy=False)
    sums += vals
    if sums_sq is not None:
        sums_sq += vals * vals
    return state


def finalize_mean(sums: NDArray[np.floating], count: int) -> NDArray[np.floating]:
    """Per-pixel mean from accumulated sums."""
    if count < 1:
        raise InvalidArgumentError(f"invalid number of frames ({count})")
    return sums / count


def finalize_mean_and_std(
    sums: NDArray[np.floating],
    sums_sq: NDArray[np.floating],
    count: int,
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Per-pixel mean and unbiased standard deviation from running sums.

    Single-pass formula, not Welford: the variance is clamped at zero since
    round-off in `sums_sq / count - mean**2` can make it slightly negative.
    """
    if count < 2:
        raise InvalidArgumentError(f"need at least 2 frames for a deviation ({count})")
    mean = sums / count
    var = np.maximum(sums_sq / count - mean * mean, 0.0) * (count / (count - 1))
    return mean, np.sqrt(var)


def _sum_fold(dtype: DTypeLike, squares: bool) -> Callable[..., Any]:
    """Fold function allocating the accumulator on the first frame."""

    def _fold(state: Any, data: NDArray[Any], timestamp: float, ordinal: int) -> Any:
        if state is None:
            zeros = np.zeros(np.shape(data), dtype=dtype)
            state = (zeros, zeros.copy()) if squares else zeros
        return accumulate(state, data)

    return _fold


def mean(
    source: Any,
    count: int = 100,
    dtype: DTypeLike = np.float64,
    **kwds: Any,
) -> NDArray[np.floating]:
    """Mean image of `count` frames from `source`.

    `dtype` is the floating point accumulator type. Keyword arguments are passed to process_stream (skip, timeout, ...).
    """
    _check_accumulator_dtype(dtype)
    sums, n = process_stream(source, count, _sum_fold(dtype, False), None, **kwds)
    if n < 1:
        raise AcquisitionTimeoutError("no frame acquired")
    return finalize_mean(sums, n)


def stat(
    source: Any,
    count: int = 100,
    dtype: DTypeLike = np.float64,
    **kwds: Any,
) -> tuple[NDArray[np.floating], NDArray[np.floating], int]:
    """Mean image, standard deviation image and frame count.

    The count may be lower than requested when `truncate` is set.
    """
    if count < 2:
        raise InvalidArgumentError(f"number of frames must be at least 2 ({count})")
    _check_accumulator_dtype(dtype)
    state, n = process_stream(source, count, _sum_fold(dtype, True), None, **kwds)
    if state is None:
        raise AcquisitionTimeoutError("no frame acquired")
    avg, std = finalize_mean_and_std(state[0], state[1], n)
    return avg, std, n


def measure_sample(
    source: Any,
    count: int,
    brightness: int,
    exposure_time: float | None = None,
    **kwds: Any,
) -> CalibrationSample:
    """Acquire `count` frames and summarize them as one calibration sample.

    The sample averages over frames and pixels. The exposure time is read
    from the source when not given.
    """
    _check_counts(count, kwds.get("skip", 0))
    if exposure_time is None:
        _, exposure_time = as_frame_source(source).get_speed()
    state, n = process_stream(
        source, count, _sum_fold(np.float64, True), None, **kwds
    )
    if state is None:
        raise AcquisitionTimeoutError("no frame acquired")
    return CalibrationSample.from_sums(
        state[0], state[1], n, brightness=brightness, exposure_time=exposure_time
    )
