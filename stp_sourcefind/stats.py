"""Robust background statistics used by the STP sourcefinder.

"""

import logging
from dataclasses import dataclass

import numpy as np
from numba import njit

from stp_sourcefind.config import MedianMethod

logger = logging.getLogger(__name__)

# Relative variance below which a clipped set is considered flat.
_FLAT_TOLERANCE = 1e-12


@dataclass(frozen=True)
class DataStats:
    """Background statistics of an image.

    Attributes
    ----------
    mean : float
        Mean of the (clipped) background pixels.
    sigma : float
        Standard deviation of the (clipped) background pixels.
    median : float
        Median of the (clipped) background pixels.
    sigma_valid : bool
        False if the estimate is degenerate, e.g. when the pixels left after
        clipping have zero variance or are too few.
    n_valid : int
        Number of pixels in the final clipped set.
    iterations : int
        Number of clipping iterations that were run.

    """

    mean: float
    sigma: float
    median: float
    sigma_valid: bool = True
    n_valid: int = 0
    iterations: int = 0


@njit
def binapprox_median(values, nbins):
    """Approximate median using the binapprox algorithm.

    Parameters
    ----------
    values : np.ndarray
        1D array of finite values.
    nbins : int
        Number of bins across the interval [mean - std, mean + std].

    Returns
    -------
    float
        The centre of the bin that holds the median. It differs from the
        exact median by at most std / nbins.

    Notes
    -----
    See Tibshirani, "Fast computation of the median by successive
    binning", arXiv:0806.3301. The median always lies within one standard
    deviation of the mean, so only that interval needs binning.

    """
    n = values.size
    mu = values.mean()
    sigma = values.std()
    if sigma == 0.0:
        return mu

    lower = mu - sigma
    scale = nbins / (2.0 * sigma)
    counts = np.zeros(nbins, dtype=np.int64)
    below = 0
    for value in values:
        if value < lower:
            below += 1
        else:
            index = int((value - lower) * scale)
            if index < nbins:
                counts[index] += 1

    middle = (n + 1) // 2
    cumulative = below
    for index in range(nbins):
        cumulative += counts[index]
        if cumulative >= middle:
            return lower + (index + 0.5) / scale
    # Only reachable through rounding at the upper edge.
    return mu + sigma


def compute_median(values, method=MedianMethod.EXACT, nbins=1000):
    """Median of a 1D array of finite values by the requested method."""
    method = MedianMethod(method)
    if method is MedianMethod.ZERO:
        return 0.0
    if method is MedianMethod.BINAPPROX:
        return float(
            binapprox_median(np.asarray(values, dtype=np.float64), nbins)
        )
    return float(np.median(values))


def estimate_stats(
    data,
    num_sigma=3.0,
    iters=5,
    median_method=MedianMethod.EXACT,
    binapprox_bins=1000,
    min_count=2,
):
    """Sigma clipped statistics of an image.

    Parameters
    ----------
    data : np.ndarray
        Image data. Non-finite values are ignored.
    num_sigma : float, default: 3.0
        Pixels further than num_sigma standard deviations from the median
        are clipped in each iteration.
    iters : int, default: 5
        Maximum number of clipping iterations.
    median_method : MedianMethod or str, default: MedianMethod.EXACT
        Algorithm for the median, which is the centre of the clipping
        interval.
    binapprox_bins : int, default: 1000
        Number of bins for the binapprox median.
    min_count : int, default: 2
        Minimum number of pixels needed for a valid standard deviation.

    Returns
    -------
    DataStats
        Never raises for degenerate data; that is signalled by
        ``sigma_valid``.

    """
    values = np.asarray(data, dtype=np.float64).ravel()
    values = values[np.isfinite(values)]

    if values.size == 0:
        return DataStats(0.0, np.nan, 0.0, sigma_valid=False)
    if values.size < min_count:
        return DataStats(
            float(values.mean()),
            np.nan,
            compute_median(values, median_method, binapprox_bins),
            sigma_valid=False,
            n_valid=int(values.size),
        )

    mean = float(values.mean())
    sigma = float(values.std())
    median = compute_median(values, median_method, binapprox_bins)
    if sigma <= _FLAT_TOLERANCE * max(abs(mean), 1.0):
        return DataStats(
            mean, sigma, median, sigma_valid=False, n_valid=int(values.size)
        )

    sigma_valid = True
    iteration = 0
    for iteration in range(1, iters + 1):
        limit = num_sigma * sigma
        clipped = values[np.fabs(values - median) <= limit]
        if clipped.size == values.size:
            iteration -= 1
            break

        clipped_sigma = float(clipped.std()) if clipped.size else 0.0
        if (
            clipped.size < min_count
            or clipped_sigma
            <= _FLAT_TOLERANCE * max(abs(float(clipped.mean())), 1.0)
        ):
            # Over-clipped; keep the last stable estimate.
            logger.debug(
                "Sigma clipping collapsed to %d pixels at iteration %d",
                clipped.size,
                iteration,
            )
            sigma_valid = False
            break

        values = clipped
        mean = float(values.mean())
        sigma = clipped_sigma
        median = compute_median(values, median_method, binapprox_bins)

    return DataStats(
        mean,
        sigma,
        median,
        sigma_valid=sigma_valid,
        n_valid=int(values.size),
        iterations=iteration,
    )


def estimate_rms(data, num_sigma=3.0, iters=5, **kwargs):
    """Root mean square of the background after sigma clipping."""
    return estimate_stats(data, num_sigma=num_sigma, iters=iters, **kwargs).sigma
