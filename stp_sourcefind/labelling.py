"""Connected component labelling of thresholded pixels into islands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import replace
from typing import TYPE_CHECKING

import numpy as np
from numba import njit
from scipy import ndimage

if TYPE_CHECKING:
    from stp_sourcefind.fitting import Gaussian2dFit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundingBox:
    """Inclusive pixel bounds of an island."""

    min_row: int
    max_row: int
    min_col: int
    max_col: int

    def __post_init__(self):
        if self.min_row > self.max_row or self.min_col > self.max_col:
            raise ValueError(f"Inverted bounding box: {self}")

    def get_width(self) -> int:
        return self.max_col - self.min_col + 1

    def get_height(self) -> int:
        return self.max_row - self.min_row + 1

    @property
    def slices(self) -> tuple[slice, slice]:
        """Numpy (row, column) slices selecting the box."""
        return (
            slice(self.min_row, self.max_row + 1),
            slice(self.min_col, self.max_col + 1),
        )

    def padded(self, margin: int, shape: tuple[int, int]) -> BoundingBox:
        """Box grown by ``margin`` pixels on all sides, clipped to ``shape``."""
        return BoundingBox(
            max(self.min_row - margin, 0),
            min(self.max_row + margin, shape[0] - 1),
            max(self.min_col - margin, 0),
            min(self.max_col + margin, shape[1] - 1),
        )

    def contains(self, row, col) -> bool:
        return (
            self.min_row <= row <= self.max_row
            and self.min_col <= col <= self.max_col
        )


@dataclass(frozen=True)
class IslandParams:
    """Properties of one island of connected, significant pixels.

    Attributes
    ----------
    label : int
        Island id, equal to its value in the label map.
    sign : int
        +1 for an island above the background, -1 for one below it.
    bounding_box : BoundingBox
        Inclusive bounds of the member pixels.
    npix : int
        Number of member pixels.
    extremum_val : float
        Image value of the member pixel furthest from the background in the
        direction of ``sign``.
    extremum_x_idx : int
        Column index of that pixel.
    extremum_y_idx : int
        Row index of that pixel.
    xbar : float
        Column of the barycentre, weighted by |value - background|. NaN if
        not computed.
    ybar : float
        Row of the barycentre. NaN if not computed.
    fit : Gaussian2dFit or None
        Gaussian fit attached by the fitting stage.
    fit_failed : bool
        True if a fit was attempted but rejected.

    """

    label: int
    sign: int
    bounding_box: BoundingBox
    npix: int
    extremum_val: float
    extremum_x_idx: int
    extremum_y_idx: int
    xbar: float = np.nan
    ybar: float = np.nan
    fit: Gaussian2dFit | None = None
    fit_failed: bool = False

    def with_fit(self, fit: Gaussian2dFit | None) -> IslandParams:
        """Copy of this island carrying the outcome of a fit attempt."""
        return replace(self, fit=fit, fit_failed=fit is None)


def connected_components(sign_map, detection_mask, eight_connected):
    """Label same-sign connected components that hold a detection pixel.

    Pixels above and below the background are labelled separately, so
    islands of opposite sign never merge.

    Parameters
    ----------
    sign_map : np.ndarray
        2D int8 array of +1, -1 and 0; 0 is background.
    detection_mask : np.ndarray
        2D boolean array; components without any True pixel are dropped.
    eight_connected : bool
        Join diagonal neighbours as well.

    Returns
    -------
    labels : np.ndarray
        2D int32 array with labels 1..N in raster order of the first pixel
        of each retained component, 0 elsewhere.
    num_labels : int
        N.

    """
    structure = ndimage.generate_binary_structure(
        2, 2 if eight_connected else 1
    )
    positive, num_positive = ndimage.label(sign_map > 0, structure)
    negative, num_negative = ndimage.label(sign_map < 0, structure)
    provisional = np.where(negative > 0, negative + num_positive, positive)

    detected = np.zeros(num_positive + num_negative + 1, dtype=bool)
    detected[provisional[detection_mask]] = True
    detected[0] = False

    # np.unique reports the first occurrence in the flattened, i.e. raster,
    # order.
    kept = np.where(detected[provisional], provisional, 0)
    ids, first = np.unique(kept.ravel(), return_index=True)
    first, ids = first[ids > 0], ids[ids > 0]
    final = np.zeros(detected.size, dtype=np.int32)
    final[ids[np.argsort(first)]] = np.arange(1, ids.size + 1)
    return final[kept], int(ids.size)


@njit
def island_properties(data, labels, num_labels, sign_map, background):
    """Bounding boxes, pixel counts, extrema, weighted sums and first pixel
    per label.

    Single pass over the image. Row ``k`` of every output refers to label
    ``k + 1``. Ties for the extremum are resolved in favour of the first
    pixel in raster order.

    """
    bounds = np.empty((num_labels, 4), dtype=np.int64)
    bounds[:, 0] = labels.shape[0]
    bounds[:, 1] = -1
    bounds[:, 2] = labels.shape[1]
    bounds[:, 3] = -1
    npix = np.zeros(num_labels, dtype=np.int64)
    signs = np.zeros(num_labels, dtype=np.int64)
    extremum = np.zeros(num_labels, dtype=np.float64)
    extremum_pos = np.zeros((num_labels, 2), dtype=np.int64)
    # Sum of weights, then weighted column and row offsets from the first
    # pixel of the island, which keeps a one pixel island exact.
    moments = np.zeros((num_labels, 3), dtype=np.float64)
    origin = np.zeros((num_labels, 2), dtype=np.int64)

    for row in range(labels.shape[0]):
        for col in range(labels.shape[1]):
            label = labels[row, col]
            if label == 0:
                continue
            k = label - 1
            value = data[row, col]
            sign = sign_map[row, col]
            if npix[k] == 0:
                origin[k, 0] = row
                origin[k, 1] = col
            if npix[k] == 0 or sign * value > sign * extremum[k]:
                extremum[k] = value
                extremum_pos[k, 0] = row
                extremum_pos[k, 1] = col
            npix[k] += 1
            signs[k] = sign
            bounds[k, 0] = min(bounds[k, 0], row)
            bounds[k, 1] = max(bounds[k, 1], row)
            bounds[k, 2] = min(bounds[k, 2], col)
            bounds[k, 3] = max(bounds[k, 3], col)
            weight = abs(value - background)
            moments[k, 0] += weight
            moments[k, 1] += weight * (col - origin[k, 1])
            moments[k, 2] += weight * (row - origin[k, 0])

    return bounds, npix, signs, extremum, extremum_pos, moments, origin


def label_islands(
    data,
    masks,
    background=0.0,
    connectivity=4,
    compute_barycentre=True,
    generate_labelmap=False,
):
    """Group the pixels of the analysis mask into islands.

    Parameters
    ----------
    data : np.ndarray
        2D image data.
    masks : threshold.ThresholdMasks
        Output of :func:`stp_sourcefind.threshold.threshold_image`.
    background : float, default: 0.0
        Background level used for the barycentre weights.
    connectivity : int, default: 4
        4 joins edge neighbours only, 8 also joins corner neighbours.
    compute_barycentre : bool, default: True
        Compute the barycentre of every island; when False, ``xbar`` and
        ``ybar`` are NaN.
    generate_labelmap : bool, default: False
        Return the label map as well.

    Returns
    -------
    islands : list of IslandParams
        Ordered by label.
    label_map : np.ndarray or None
        int32 array of the image shape with the island labels, 0 for
        background. None unless ``generate_labelmap`` is set.

    Raises
    ------
    ValueError
        For a connectivity other than 4 or 8.

    """
    if connectivity not in (4, 8):
        raise ValueError(f"connectivity must be 4 or 8, not {connectivity}")

    labels, num_labels = connected_components(
        masks.sign_map, masks.detection_mask, connectivity == 8
    )
    (
        bounds,
        npix,
        signs,
        extremum,
        extremum_pos,
        moments,
        origin,
    ) = island_properties(
        np.asarray(data, dtype=np.float64),
        labels,
        num_labels,
        masks.sign_map,
        float(background),
    )

    islands = []
    for k in range(num_labels):
        if compute_barycentre and moments[k, 0] > 0:
            min_row, max_row, min_col, max_col = bounds[k]
            # Clip the rounding error of the weighted mean to the box.
            xbar = min(
                max(origin[k, 1] + moments[k, 1] / moments[k, 0], min_col),
                max_col,
            )
            ybar = min(
                max(origin[k, 0] + moments[k, 2] / moments[k, 0], min_row),
                max_row,
            )
        else:
            xbar = ybar = np.nan
        islands.append(
            IslandParams(
                label=k + 1,
                sign=int(signs[k]),
                bounding_box=BoundingBox(*(int(b) for b in bounds[k])),
                npix=int(npix[k]),
                extremum_val=float(extremum[k]),
                extremum_x_idx=int(extremum_pos[k, 1]),
                extremum_y_idx=int(extremum_pos[k, 0]),
                xbar=float(xbar),
                ybar=float(ybar),
            )
        )

    logger.info("Number of detected islands = %d", num_labels)
    return islands, (labels if generate_labelmap else None)


def filter_islands(islands, source_min_area):
    """Drop islands of fewer than ``source_min_area`` pixels, keeping order."""
    return [island for island in islands if island.npix >= source_min_area]
