"""Two-level thresholding of an image against its background statistics."""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class ThresholdMasks:
    """Pixel masks produced by :func:`threshold_image`.

    Attributes
    ----------
    analysis_mask : np.ndarray
        Boolean array, True where a pixel deviates from the background mean
        by more than the analysis threshold, in an enabled direction.
    detection_mask : np.ndarray
        Boolean array, the same test at the detection threshold. Always a
        subset of ``analysis_mask``.
    sign_map : np.ndarray
        int8 array: +1 for analysis pixels above the background, -1 for
        analysis pixels below it, 0 elsewhere.

    """

    analysis_mask: np.ndarray
    detection_mask: np.ndarray
    sign_map: np.ndarray


def threshold_image(
    data,
    stats,
    detection_n_sigma,
    analysis_n_sigma,
    find_negative_sources=True,
):
    """Compute the analysis and detection masks of an image.

    Parameters
    ----------
    data : np.ndarray
        2D image data; non-finite pixels are excluded from both masks.
    stats : stats.DataStats
        Background statistics; ``mean`` and ``sigma`` set the thresholds.
    detection_n_sigma : float
        Detection threshold in units of ``stats.sigma``.
    analysis_n_sigma : float
        Analysis threshold in units of ``stats.sigma``.
    find_negative_sources : bool, default: True
        Also flag pixels below the background.

    Returns
    -------
    ThresholdMasks

    """
    data = np.asarray(data)
    deviation = data - stats.mean
    finite = np.isfinite(deviation)
    # Comparisons with nan are False, but keep numpy quiet about them.
    deviation = np.where(finite, deviation, 0.0)

    analysis_level = analysis_n_sigma * stats.sigma
    detection_level = detection_n_sigma * stats.sigma

    positive = finite & (deviation > analysis_level)
    detection = positive & (deviation > detection_level)
    sign_map = positive.astype(np.int8)

    if find_negative_sources:
        negative = finite & (deviation < -analysis_level)
        detection |= negative & (deviation < -detection_level)
        sign_map[negative] = -1
    else:
        negative = np.zeros_like(positive)

    return ThresholdMasks(positive | negative, detection, sign_map)
