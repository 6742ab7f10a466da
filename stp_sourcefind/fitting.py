"""Fitting of elliptical Gaussians to islands.

The fit is a nonlinear least squares problem. :class:`ResidualProblem`
builds the residuals and their Jacobian, analytically or by finite
differences, over one block of pixels or one block per image row. The
minimisation itself is left to :mod:`scipy.optimize`, selected through
:class:`~stp_sourcefind.config.SolverType`. Every solver honours the same
contract, ``solver(problem, initial, max_iterations, tolerance)`` returning
``(params, converged, iterations, cost, report)``.

"""

import logging
import math
from dataclasses import dataclass

import numpy as np
import scipy.optimize

from stp_sourcefind.config import DiffMethod
from stp_sourcefind.config import SolverType
from stp_sourcefind.gaussian import FWHM_PER_SIGMA
from stp_sourcefind.gaussian import PARAMETERS as FIT_PARAMS
from stp_sourcefind.gaussian import gaussian
from stp_sourcefind.gaussian import jac_gaussian

logger = logging.getLogger(__name__)

# Fitted axes beyond this multiple of the fit region diagonal are rejected.
MAX_AXIS_TO_DIAGONAL = 10.0


@dataclass(frozen=True)
class Gaussian2dFit:
    """Elliptical Gaussian fitted to an island.

    ``semimajor`` and ``semiminor`` are standard deviations in pixels, with
    semimajor >= semiminor. ``theta`` is the angle of the major axis from
    the +x (column) axis towards +y (row), in (-pi/2, pi/2]. For islands
    below the background ``amplitude`` is negative and ``sign`` is -1.

    """

    amplitude: float
    x_centre: float
    y_centre: float
    semimajor: float
    semiminor: float
    theta: float
    sign: int = 1
    converged: bool = True
    iterations: int = 0
    cost: float = np.nan
    solver_report: str = ""

    @property
    def params(self):
        """The six model parameters, in the order of :func:`gaussian`."""
        return tuple(getattr(self, name) for name in FIT_PARAMS)


class ResidualProblem:
    """Residuals of a Gaussian model with respect to a set of pixels.

    Parameters
    ----------
    x : np.ndarray
        Column indices of the pixels.
    y : np.ndarray
        Row indices of the pixels, in non-decreasing order when more than
        one block is requested.
    values : np.ndarray
        Pixel values to fit.
    diff_method : DiffMethod or str
        How to compute the Jacobian, and whether to evaluate the pixels as a
        single block or as one block per row.

    """

    def __init__(self, x, y, values, diff_method=DiffMethod.ANALYTIC):
        self.x = np.asarray(x, dtype=np.float64)
        self.y = np.asarray(y, dtype=np.float64)
        self.values = np.asarray(values, dtype=np.float64)
        self.diff_method = DiffMethod(diff_method)

        if self.diff_method in (
            DiffMethod.ANALYTIC_SINGLE_BLOCK,
            DiffMethod.NUMERIC_SINGLE_BLOCK,
        ):
            self.blocks = [slice(0, self.values.size)]
        else:
            edges = np.flatnonzero(np.diff(self.y)) + 1
            bounds = np.concatenate(([0], edges, [self.values.size]))
            self.blocks = [
                slice(start, stop) for start, stop in zip(bounds, bounds[1:])
            ]

    @property
    def size(self):
        return self.values.size

    def _block_residuals(self, params, block):
        return (
            gaussian(*params)(self.x[block], self.y[block])
            - self.values[block]
        )

    def _block_jacobian(self, params, block):
        if self.diff_method in (
            DiffMethod.ANALYTIC,
            DiffMethod.ANALYTIC_SINGLE_BLOCK,
        ):
            jac = jac_gaussian(params)
            x, y = self.x[block], self.y[block]
            return np.column_stack([jac[name](x, y) for name in FIT_PARAMS])
        epsilon = np.sqrt(np.finfo(np.float64).eps) * np.maximum(
            1.0, np.abs(params)
        )
        return scipy.optimize.approx_fprime(
            params, self._block_residuals, epsilon, block
        ).reshape(-1, len(FIT_PARAMS))

    def residuals(self, params):
        """Model minus data for all pixels."""
        params = np.asarray(params, dtype=np.float64)
        return np.concatenate(
            [self._block_residuals(params, block) for block in self.blocks]
        )

    def jacobian(self, params):
        """Derivatives of the residuals, shape (pixels, parameters)."""
        params = np.asarray(params, dtype=np.float64)
        return np.vstack(
            [self._block_jacobian(params, block) for block in self.blocks]
        )

    def cost(self, params):
        """Half the sum of squared residuals."""
        r = self.residuals(params)
        return 0.5 * np.dot(r, r)

    def gradient(self, params):
        return self.jacobian(params).T @ self.residuals(params)


def _minimize_line_search(method, problem, initial, max_iterations, tolerance):
    options = {"maxiter": max_iterations, "gtol": tolerance}
    if method == "L-BFGS-B":
        options["ftol"] = tolerance
    result = scipy.optimize.minimize(
        problem.cost,
        initial,
        jac=problem.gradient,
        method=method,
        options=options,
    )
    # BFGS status 2 and L-BFGS-B status 2 signal that the line search could
    # not make progress; at machine precision near the optimum that is
    # expected, so only the iteration cap counts as non-convergence.
    converged = result.status != 1
    report = f"{method}: {result.message} (status {result.status})"
    return result.x, converged, int(result.nit), float(result.fun), report


def minimize_bfgs(problem, initial, max_iterations, tolerance):
    return _minimize_line_search(
        "BFGS", problem, initial, max_iterations, tolerance
    )


def minimize_lbfgs(problem, initial, max_iterations, tolerance):
    return _minimize_line_search(
        "L-BFGS-B", problem, initial, max_iterations, tolerance
    )


def minimize_trust_region(problem, initial, max_iterations, tolerance):
    # MINPACK Levenberg-Marquardt, dense QR factorisation of the Jacobian.
    result = scipy.optimize.least_squares(
        problem.residuals,
        initial,
        jac=problem.jacobian,
        method="lm",
        max_nfev=max_iterations,
        xtol=tolerance,
        ftol=tolerance,
        gtol=tolerance,
    )
    converged = result.status > 0
    report = f"lm: {result.message} (status {result.status})"
    return result.x, converged, int(result.nfev), float(result.cost), report


SOLVERS = {
    SolverType.LINE_SEARCH_BFGS: minimize_bfgs,
    SolverType.LINE_SEARCH_LBFGS: minimize_lbfgs,
    SolverType.TRUST_REGION_DENSE_QR: minimize_trust_region,
}


def minimize(
    problem,
    initial,
    solver_type=SolverType.TRUST_REGION_DENSE_QR,
    max_iterations=200,
    tolerance=1e-10,
):
    """Minimise half the sum of squared residuals of ``problem``.

    Returns
    -------
    tuple
        (params, converged, iterations, cost, report)

    """
    solver = SOLVERS[SolverType(solver_type)]
    return solver(
        problem, np.asarray(initial, dtype=np.float64), max_iterations, tolerance
    )


def initial_guess(island, background=0.0):
    """Starting parameters for the fit of an island.

    The amplitude is the distance of the extremum from the background, the
    centre is the extremum pixel and the axes follow from the island extent,
    taken as full width at half maximum.

    """
    box = island.bounding_box
    return np.array(
        [
            abs(island.extremum_val - background),
            float(island.extremum_x_idx),
            float(island.extremum_y_idx),
            max(box.get_width() / FWHM_PER_SIGMA, 0.5),
            max(box.get_height() / FWHM_PER_SIGMA, 0.5),
            0.0,
        ]
    )


def normalise_theta(theta):
    """Map an angle of an axis, with period pi, onto (-pi/2, pi/2]."""
    theta = math.fmod(theta, math.pi)
    if theta > math.pi / 2:
        theta -= math.pi
    elif theta <= -math.pi / 2:
        theta += math.pi
    return theta


def fit_island(
    data,
    island,
    label_map=None,
    background=0.0,
    diff_method=DiffMethod.ANALYTIC_SINGLE_BLOCK,
    solver_type=SolverType.TRUST_REGION_DENSE_QR,
    margin=0,
    max_iterations=200,
    tolerance=1e-10,
):
    """Fit an elliptical Gaussian to an island.

    Parameters
    ----------
    data : np.ndarray
        2D image data.
    island : labelling.IslandParams
        The island to fit.
    label_map : np.ndarray, default: None
        Island labels; when given, pixels of other islands are left out of
        the fit.
    background : float, default: 0.0
        Background level subtracted from the pixel values.
    diff_method : DiffMethod or str
        Jacobian computation.
    solver_type : SolverType or str
        Minimisation strategy.
    margin : int, default: 0
        Number of pixels by which the bounding box of the island is grown to
        select the fitted pixels.
    max_iterations : int, default: 200
        Iteration cap of the solver.
    tolerance : float, default: 1e-10
        Convergence tolerance of the solver.

    Returns
    -------
    Gaussian2dFit or None
        None if the fit failed; the reason is logged.

    Notes
    -----
    Islands below the background are fitted to the negated, background
    subtracted pixel values. The reported amplitude is then negated again,
    so it carries the sign of the island; all other parameters are reported
    as fitted.

    """
    box = island.bounding_box.padded(margin, data.shape)
    region = np.asarray(data[box.slices], dtype=np.float64)
    rows, cols = np.indices(region.shape)
    rows += box.min_row
    cols += box.min_col

    usable = np.isfinite(region)
    if label_map is not None:
        region_labels = label_map[box.slices]
        usable &= (region_labels == 0) | (region_labels == island.label)
        members = region_labels == island.label
    else:
        members = usable

    member_values = region[members & np.isfinite(region)]
    if member_values.size == 0 or np.all(member_values == member_values[0]):
        logger.warning("Island %d is flat; cannot fit", island.label)
        return None
    if usable.sum() < len(FIT_PARAMS):
        logger.warning(
            "Island %d has %d usable pixels, fewer than the number of "
            "parameters",
            island.label,
            usable.sum(),
        )
        return None

    problem = ResidualProblem(
        cols[usable],
        rows[usable],
        island.sign * (region[usable] - background),
        diff_method,
    )

    try:
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            params, converged, iterations, cost, report = minimize(
                problem,
                initial_guess(island, background),
                solver_type,
                max_iterations,
                tolerance,
            )
    except (ValueError, np.linalg.LinAlgError) as e:
        logger.warning("Fit of island %d raised: %s", island.label, e)
        return None

    if not converged:
        logger.warning(
            "Fit of island %d did not converge: %s", island.label, report
        )
        return None
    if not (np.all(np.isfinite(params)) and np.isfinite(cost)):
        logger.warning("Fit of island %d is not finite", island.label)
        return None

    amplitude, x_centre, y_centre, semimajor, semiminor, theta = (
        float(p) for p in params
    )
    # Negative axes are a valid fit, since they are squared in the
    # definition of the Gaussian.
    semimajor, semiminor = abs(semimajor), abs(semiminor)
    if semiminor > semimajor:
        semimajor, semiminor = semiminor, semimajor
        theta += np.pi / 2
    theta = normalise_theta(theta)

    diagonal = math.hypot(box.get_width(), box.get_height())
    reason = None
    if semiminor <= 0:
        reason = "collapsed axis"
    elif semimajor > MAX_AXIS_TO_DIAGONAL * diagonal:
        reason = f"semimajor axis {semimajor:.3g} too large"
    elif not (
        box.min_col - 1 <= x_centre <= box.max_col + 1
        and box.min_row - 1 <= y_centre <= box.max_row + 1
    ):
        reason = f"centre ({x_centre:.3g}, {y_centre:.3g}) outside fit region"
    elif amplitude <= 0:
        reason = f"non-positive amplitude {amplitude:.3g}"
    if reason is not None:
        logger.warning("Fit of island %d rejected: %s", island.label, reason)
        return None

    return Gaussian2dFit(
        amplitude=island.sign * amplitude,
        x_centre=x_centre,
        y_centre=y_centre,
        semimajor=semimajor,
        semiminor=semiminor,
        theta=theta,
        sign=island.sign,
        converged=converged,
        iterations=iterations,
        cost=cost,
        solver_report=report,
    )
