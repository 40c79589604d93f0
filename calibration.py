"""Detector Calibration.

Weighted least-squares fit of the detector noise model to summary samples
of raw pixel data.

For a sample taken with brightness flag `s` (1 for flat-field exposures, 0
for dark and bias exposures) and exposure time `Δt`, the raw data `d` obey:

    E(d)   = (s*a + c)*Δt/g + b
    Var(d) = ((s*a + c)*Δt + σ²)/g²

where `a` is the flat flux times the quantum efficiency and `c` the dark
current (photo-electrons per pixel per second), `b` the bias (ADU), `g` the
conversion gain (photo-electrons per ADU) and `σ` the read noise
(photo-electrons per pixel per frame).

The mean is linear in (a/g, b, c/g) which fit_detector_model() estimates;
fit_photon_transfer() then uses the variance to separate g and σ.

References:
    Janesick, J. R. (2007). Photon Transfer: DN → λ. SPIE Press.
    EMVA Standard 1288, Release 4.0 (2021).
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

import dataclasses
import logging
import math

import numpy as np

from scicam import InvalidArgumentError, ShapeMismatchError, SingularSystemError


if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

log = logging.getLogger(__name__)

# Relative pivot below which the normal equations are considered singular
PIVOT_RTOL = 1e-10
# Variance of uniform rounding to integer ADU
QUANTIZATION_VARIANCE = 1.0 / 12.0


class DetectorModel(str, Enum):
    """Set of parameters to fit."""

    FULL = "full"  # flux, bias and dark current
    REDUCED = "reduced"  # flux and bias, dark current fixed at 0


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class CalibrationSample:
    """Summary of raw data acquired under one exposure condition."""

    count: int  # Number of samples (pixels × frames)
    average: float  # Average value (ADU)
    average_squared: float  # Average squared value (ADU²)
    brightness: int  # 1 for flat field, 0 for dark or bias
    exposure_time: float  # Seconds

    def __post_init__(self) -> None:
        if self.count < 1:
            raise InvalidArgumentError(f"invalid sample count ({self.count})")
        if self.brightness not in (0, 1):
            raise InvalidArgumentError(f"brightness flag must be 0 or 1 ({self.brightness})")
        if not (math.isfinite(self.exposure_time) and self.exposure_time >= 0.0):
            raise InvalidArgumentError(f"invalid exposure time ({self.exposure_time} s)")

    @property
    def variance(self) -> float:
        """Population variance of the summarized data."""
        return max(self.average_squared - self.average**2, 0.0)

    @classmethod
    def from_sums(
        cls,
        sums: NDArray[np.floating],
        sums_sq: NDArray[np.floating],
        nframes: int,
        *,
        brightness: int,
        exposure_time: float,
    ) -> CalibrationSample:
        """Build a sample from per-pixel running sums over `nframes` frames."""
        n = int(nframes) * int(np.size(sums))
        if n < 1:
            raise InvalidArgumentError("no data to summarize")
        return cls(
            count=n,
            average=float(np.sum(sums)) / n,
            average_squared=float(np.sum(sums_sq)) / n,
            brightness=brightness,
            exposure_time=float(exposure_time),
        )


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class FitResult:
    """Outcome of a detector model fit.

    `flux` and `dark_current` are in ADU per second (a/g and c/g), `bias` in
    ADU. Parameters the model does not include are exactly 0.
    """

    residual: float
    flux: float
    bias: float
    dark_current: float

    @property
    def parameters(self) -> tuple[float, float, float]:
        return (self.flux, self.bias, self.dark_current)


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class DetectorParameters:
    """Physical detector parameters."""

    gain: float  # Photo-electrons per ADU
    read_noise: float  # Photo-electrons per pixel per frame
    bias: float  # ADU
    flux: float  # Photo-electrons per pixel per second
    dark_current: float  # Photo-electrons per pixel per second


# =============================================================================
# Small Symmetric Systems
# =============================================================================


def solve(a: NDArray[np.float64], b: NDArray[np.float64]) -> tuple[float, NDArray[np.float64]]:
    """Solve the symmetric positive definite system `a @ x = b`.

    Returns:
        Tuple of (q, x) with the score q = 2 b·x - x·A·x, the maximum of
        that quadratic form.

    Raises:
        SingularSystemError: If `a` is not (numerically) positive definite.
    """
    diag = np.diag(a)
    try:
        chol = np.linalg.cholesky(a)
    except np.linalg.LinAlgError as err:
        raise SingularSystemError(f"normal equations are singular: {err}") from err
    pivots = np.diag(chol) ** 2
    if not np.all(pivots > PIVOT_RTOL * diag):
        raise SingularSystemError(
            "normal equations are singular: data cannot separate the model parameters"
        )
    x = np.linalg.solve(a, b)
    q = float(2.0 * (b @ x) - x @ a @ x)
    return q, x


def _sub(a: NDArray[np.float64], b: NDArray[np.float64], idx: list[int]):
    """Restriction of the system to the parameters in `idx`."""
    return a[np.ix_(idx, idx)], b[idx]


# =============================================================================
# Detector Model Fit
# =============================================================================


def normal_equations(
    samples: Sequence[CalibrationSample],
    weights: Sequence[float] | None = None,
) -> tuple[NDArray[np.float64], NDArray[np.float64], float]:
    """Weighted normal equations of the full detector model.

    The basis functions are h1 = s*Δt (flux), h2 = 1 (bias), h3 = Δt (dark
    current); sample i has weight count_i * weights_i.

    Returns:
        Tuple of (A, b, γ) with A the 3×3 matrix, b the right-hand side and
        γ the weighted sum of average squared values.
    """
    n = len(samples)
    if weights is None:
        w = np.ones(n)
    else:
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != (n,):
            raise ShapeMismatchError(f"{n} samples but {w.size} weights")
    cnt = np.array([d.count for d in samples], dtype=np.float64)
    avg = np.array([d.average for d in samples], dtype=np.float64)
    sqr = np.array([d.average_squared for d in samples], dtype=np.float64)
    fct = np.array([d.brightness for d in samples], dtype=np.float64)
    dt = np.array([d.exposure_time for d in samples], dtype=np.float64)

    w = cnt * w  # total weight
    h = np.stack([fct * dt, np.ones(n), dt])  # basis functions, (3, n)
    hw = h * w
    a = hw @ h.T
    b = hw @ avg
    gamma = float(w @ sqr)
    return a, b, gamma


def fit_detector_model(
    samples: Sequence[CalibrationSample],
    weights: Sequence[float] | None = None,
    *,
    model: DetectorModel | str = DetectorModel.FULL,
    nonnegative: bool = False,
) -> FitResult:
    """Fit flux, bias and (full model) dark current to calibration samples.

    Args:
        samples: Calibration samples.
        weights: Extra per-sample weights (default 1), multiplied by counts.
        model: FULL or REDUCED (dark current fixed at 0).
        nonnegative: Constrain flux and dark current to be non-negative.

    Returns:
        Fit result; the residual is γ - q/2 for the retained score q.

    Raises:
        ShapeMismatchError: If samples and weights differ in length.
        SingularSystemError: If the data cannot determine the parameters,
            e.g. a single exposure time with a single brightness flag.
    """
    model = DetectorModel(model)
    a, b, gamma = normal_equations(samples, weights)
    x = np.zeros(3)

    if model == DetectorModel.REDUCED:
        qmax, sol = solve(*_sub(a, b, [0, 1]))
        x[[0, 1]] = sol
        if nonnegative and x[0] < 0.0:
            # The only other possibility is flux = 0
            qmax, sol = solve(*_sub(a, b, [1]))
            x[:] = (0.0, sol[0], 0.0)
    else:
        qmax, x = solve(a, b)
        if nonnegative and (x[0] < 0.0 or x[2] < 0.0):
            # Active set search. Both constraints active is always feasible.
            qmax, sol = solve(*_sub(a, b, [1]))
            x = np.array([0.0, sol[0], 0.0])
            # Only flux = 0
            q, sol = solve(*_sub(a, b, [1, 2]))
            if q > qmax and sol[1] >= 0.0:
                qmax, x = q, np.array([0.0, sol[0], sol[1]])
            # Only dark current = 0
            q, sol = solve(*_sub(a, b, [0, 1]))
            if q > qmax and sol[0] >= 0.0:
                qmax, x = q, np.array([sol[0], sol[1], 0.0])

    log.debug("Fitted %s detector model: x=%s, q=%g", model.value, x, qmax)
    return FitResult(
        residual=gamma - qmax / 2.0,
        flux=float(x[0]),
        bias=float(x[1]),
        dark_current=float(x[2]),
    )


# =============================================================================
# Photon Transfer
# =============================================================================


def fit_photon_transfer(
    samples: Sequence[CalibrationSample],
    bias: float,
    weights: Sequence[float] | None = None,
) -> tuple[float, float]:
    """Fit conversion gain and read noise from sample variances.

    Solves var_i = (avg_i - bias)/g + σ²/g² in the weighted least squares
    sense for (1/g, σ²/g²). On top of `weights`, sample i is weighted by
    count_i / var_i², the inverse variance of a sample variance, with var_i
    floored at the 1/12 ADU² quantization noise.

    Returns:
        Tuple of (gain, read_noise) in photo-electrons per ADU and
        photo-electrons.

    Raises:
        SingularSystemError: If the signal levels do not span a range, or
            the fitted slope is not positive.
    """
    n = len(samples)
    if weights is None:
        w = np.ones(n)
    else:
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != (n,):
            raise ShapeMismatchError(f"{n} samples but {w.size} weights")
    signal = np.array([d.average - bias for d in samples])
    var = np.array([d.variance for d in samples])
    cnt = np.array([d.count for d in samples], dtype=np.float64)
    w = w * cnt / np.maximum(var, QUANTIZATION_VARIANCE) ** 2

    h = np.stack([signal, np.ones(n)])
    hw = h * w
    _, (inv_gain, offset) = solve(hw @ h.T, hw @ var)
    if not inv_gain > 0.0:
        raise SingularSystemError(f"non-positive photon transfer slope ({inv_gain})")
    gain = 1.0 / inv_gain
    # A slightly negative intercept means read noise below the fit precision
    read_noise = math.sqrt(max(offset, 0.0)) * gain
    return gain, read_noise


def calibrate(
    samples: Sequence[CalibrationSample],
    weights: Sequence[float] | None = None,
    *,
    model: DetectorModel | str = DetectorModel.FULL,
    nonnegative: bool = True,
) -> DetectorParameters:
    """Estimate physical detector parameters from calibration samples."""
    fit = fit_detector_model(samples, weights, model=model, nonnegative=nonnegative)
    gain, read_noise = fit_photon_transfer(samples, fit.bias, weights)
    params = DetectorParameters(
        gain=gain,
        read_noise=read_noise,
        bias=fit.bias,
        flux=fit.flux * gain,
        dark_current=fit.dark_current * gain,
    )
    log.info(
        "Calibration: gain=%.4g e-/ADU, read noise=%.4g e-, bias=%.4g ADU",
        params.gain,
        params.read_noise,
        params.bias,
    )
    return params
