"""Photon transfer curve plot.

Variance versus mean signal of calibration samples, with the line implied
by fitted detector parameters: var = (avg - bias)/g + (σ/g)².
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import matplotlib.pyplot as plt

from calibration import CalibrationSample, DetectorParameters


if TYPE_CHECKING:
    from collections.abc import Sequence

    from matplotlib.axes import Axes


def photon_transfer_points(
    samples: Sequence[CalibrationSample],
) -> tuple[np.ndarray, np.ndarray]:
    """Return (mean, variance) arrays of the samples, in ADU and ADU²."""
    avg = np.array([d.average for d in samples], dtype=np.float64)
    var = np.array([d.variance for d in samples], dtype=np.float64)
    return avg, var


def plot_photon_transfer(
    samples: Sequence[CalibrationSample],
    params: DetectorParameters | None = None,
    ax: Axes | None = None,
) -> Axes:
    """Plot the photon transfer curve of `samples`.

    Args:
        samples: Calibration samples.
        params: Fitted parameters; the model line is drawn when given.
        ax: Axes to draw into (a new figure is created otherwise).

    Returns:
        The axes.
    """
    if ax is None:
        _, ax = plt.subplots()
    avg, var = photon_transfer_points(samples)
    bright = np.array([d.brightness == 1 for d in samples], dtype=bool)
    ax.scatter(avg[bright], var[bright], marker="o", label="flat")
    ax.scatter(avg[~bright], var[~bright], marker="x", label="dark / bias")
    if params is not None and len(samples) > 0:
        x = np.linspace(min(params.bias, float(avg.min())), float(avg.max()), 100)
        y = (x - params.bias) / params.gain + (params.read_noise / params.gain) ** 2
        ax.plot(
            x,
            y,
            "-",
            label=f"g={params.gain:.3g} e-/ADU, σ={params.read_noise:.3g} e-",
        )
    ax.set_xlabel("Mean signal (ADU)")
    ax.set_ylabel("Variance (ADU²)")
    ax.set_title("Photon transfer")
    ax.legend()
    return ax
