"""Source finding on a single image.

:class:`SourceFindImage` runs the complete pipeline (background statistics,
thresholding, labelling, area filtering and optional Gaussian fitting) on
one 2D image and holds the results.

"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from enum import Enum
from functools import partial

import numpy as np

from stp_sourcefind import stats
from stp_sourcefind.config import SourceFindConf
from stp_sourcefind.fitting import fit_island
from stp_sourcefind.gaussian import evaluate_model_on_pixel_grid
from stp_sourcefind.labelling import filter_islands
from stp_sourcefind.labelling import label_islands
from stp_sourcefind.threshold import threshold_image

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Stages of the source finding pipeline, in order of execution."""

    UNINITIALIZED = "uninitialized"
    STATISTICS_COMPUTED = "statistics_computed"
    THRESHOLDED = "thresholded"
    LABELED = "labeled"
    FILTERED = "filtered"
    FIT = "fit"
    DONE = "done"


def validate_conf(conf: SourceFindConf):
    """Raise ValueError for settings the pipeline cannot run with."""
    if conf.detection_n_sigma < conf.analysis_n_sigma:
        raise ValueError(
            f"detection_n_sigma ({conf.detection_n_sigma}) must be at least "
            f"analysis_n_sigma ({conf.analysis_n_sigma})"
        )
    if conf.sigma_clip_iters < 0:
        raise ValueError("sigma_clip_iters must be non-negative")
    if conf.source_min_area < 0:
        raise ValueError("source_min_area must be non-negative")
    if conf.connectivity not in (4, 8):
        raise ValueError(
            f"connectivity must be 4 or 8, not {conf.connectivity}"
        )
    if conf.rms_estimate is not None and not conf.rms_estimate > 0:
        raise ValueError("rms_estimate must be positive")
    if conf.binapprox_bins < 1:
        raise ValueError("binapprox_bins must be at least 1")
    if conf.fit_margin < 0:
        raise ValueError("fit_margin must be non-negative")
    if conf.max_iterations < 1:
        raise ValueError("max_iterations must be at least 1")


class SourceFindImage:
    """Find and characterise the sources in an image.

    The pipeline runs to completion in the constructor.

    Parameters
    ----------
    data : np.ndarray
        2D image data, rows by columns. Non-finite pixels are treated as
        missing. The array is not modified.
    conf : SourceFindConf, default: SourceFindConf()
        Source finding settings.

    Attributes
    ----------
    state : PipelineState
        Last stage completed, ``PipelineState.DONE`` after construction.
    stats : stats.DataStats
        Background statistics used for thresholding. If ``rms_estimate`` is
        configured, its sigma is that estimate.
    masks : threshold.ThresholdMasks or None
        Analysis and detection masks, kept only with ``generate_labelmap``.
    label_map : np.ndarray or None
        int32 island labels, kept only with ``generate_labelmap``. Pixels of
        islands removed by the area filter are zero.
    islands : list of labelling.IslandParams
        Retained islands in label order, carrying their fits if fitting was
        enabled.

    Raises
    ------
    ValueError
        For empty or non-2D data, or inconsistent settings.

    """

    def __init__(self, data, conf: SourceFindConf = SourceFindConf()):
        data = np.asarray(data)
        if data.ndim != 2 or data.size == 0:
            raise ValueError(
                f"Expected a non-empty 2D image, got shape {data.shape}"
            )
        if not np.issubdtype(data.dtype, np.number):
            raise ValueError(f"Image data of type {data.dtype} is not numeric")
        validate_conf(conf)

        self.data = np.ascontiguousarray(data, dtype=np.float64)
        self._conf = conf
        self.state = PipelineState.UNINITIALIZED
        self.stats = None
        self.masks = None
        self.label_map = None
        self.islands = []

        self._run()

    @property
    def conf(self) -> SourceFindConf:
        return self._conf

    @property
    def detection_n_sigma(self):
        return self.conf.detection_n_sigma

    @property
    def analysis_n_sigma(self):
        return self.conf.analysis_n_sigma

    @property
    def rms_est(self):
        """Standard deviation of the background used for thresholding."""
        return self.stats.sigma

    @property
    def bg_level(self):
        """Background level used for thresholding."""
        return self.stats.mean

    @property
    def fits(self):
        """Successful Gaussian fits, in label order."""
        return [island.fit for island in self.islands if island.fit is not None]

    @property
    def sources(self):
        """Gaussian fits where available, else the islands, in label order."""
        return [
            island.fit if island.fit is not None else island
            for island in self.islands
        ]

    def _run(self):
        conf = self.conf

        data_stats = stats.estimate_stats(
            self.data,
            num_sigma=conf.clip_n_sigma,
            iters=conf.sigma_clip_iters,
            median_method=conf.median_method,
            binapprox_bins=conf.binapprox_bins,
        )
        if conf.rms_estimate is not None:
            data_stats = replace(
                data_stats, sigma=float(conf.rms_estimate), sigma_valid=True
            )
        elif not data_stats.sigma_valid:
            logger.warning(
                "Background statistics are degenerate (sigma=%g from %d "
                "pixels); using the last stable estimate",
                data_stats.sigma,
                data_stats.n_valid,
            )
        self.stats = data_stats
        self.state = PipelineState.STATISTICS_COMPUTED
        self._debug(
            "Background mean %g, sigma %g after %d clipping iterations",
            data_stats.mean,
            data_stats.sigma,
            data_stats.iterations,
        )

        masks = threshold_image(
            self.data,
            data_stats,
            conf.detection_n_sigma,
            conf.analysis_n_sigma,
            conf.find_negative_sources,
        )
        self.state = PipelineState.THRESHOLDED
        self._debug(
            "Thresholding at mean %g: %d analysis and %d detection pixels",
            data_stats.mean,
            masks.analysis_mask.sum(),
            masks.detection_mask.sum(),
        )

        # The fitter needs the label map to leave out neighbouring islands.
        islands, label_map = label_islands(
            self.data,
            masks,
            background=data_stats.mean,
            connectivity=conf.connectivity,
            compute_barycentre=conf.compute_barycentre,
            generate_labelmap=conf.generate_labelmap or conf.gaussian_fitting,
        )
        self.state = PipelineState.LABELED

        kept = filter_islands(islands, conf.source_min_area)
        if len(kept) < len(islands):
            self._debug(
                "Dropped %d islands smaller than %d pixels",
                len(islands) - len(kept),
                conf.source_min_area,
            )
        self.state = PipelineState.FILTERED

        if conf.gaussian_fitting and kept:
            fit_island_partial = partial(
                fit_island,
                self.data,
                label_map=label_map,
                background=data_stats.mean,
                diff_method=conf.diff_method,
                solver_type=conf.solver_type,
                margin=conf.fit_margin,
                max_iterations=conf.max_iterations,
            )
            with ThreadPoolExecutor(max_workers=conf.nr_threads) as executor:
                fit_results = list(executor.map(fit_island_partial, kept))
            kept = [
                island.with_fit(fit) for island, fit in zip(kept, fit_results)
            ]
            logger.info(
                "Fitted %d of %d islands",
                sum(fit is not None for fit in fit_results),
                len(kept),
            )
        self.state = PipelineState.FIT

        self.islands = kept
        if conf.generate_labelmap:
            self.masks = masks
            # Filtered islands still mask their pixels out of the fits above;
            # only the exposed map loses them.
            if len(kept) < len(islands):
                kept_labels = [island.label for island in kept]
                label_map = np.where(
                    np.isin(label_map, kept_labels), label_map, 0
                ).astype(np.int32)
            self.label_map = label_map
        self.state = PipelineState.DONE

    def _debug(self, msg, *args):
        """Log a pipeline stage summary when this run has ``debug`` set."""
        if self.conf.debug:
            logger.debug(msg, *args)

    def model_image(self):
        """Sum of the fitted Gaussians, without background."""
        model = np.zeros(self.data.shape, dtype=np.float64)
        for fit in self.fits:
            model += evaluate_model_on_pixel_grid(self.data.shape, *fit.params)
        return model

    def residual_image(self):
        """The image with the fitted Gaussians subtracted."""
        return self.data - self.model_image()


def source_find_image(
    data,
    detection_n_sigma,
    analysis_n_sigma,
    rms_estimate=None,
    **conf_overrides,
):
    """Run the source finding pipeline on ``data``.

    Any other :class:`~stp_sourcefind.config.SourceFindConf` field can be
    passed as a keyword argument.

    """
    conf = SourceFindConf(
        detection_n_sigma=detection_n_sigma,
        analysis_n_sigma=analysis_n_sigma,
        rms_estimate=rms_estimate,
        **conf_overrides,
    )
    return SourceFindImage(data, conf)
