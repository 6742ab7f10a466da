"""Definition of a two-dimensional elliptical Gaussian.

The Gaussian is parametrised by its amplitude, centre (x is the column
index, y the row index), the standard deviations along its major and minor
axes and the angle of the major axis, measured from the +x axis towards +y:

    f(x, y) = A exp(-[a dx**2 + 2 b dx dy + c dy**2])

"""

import numpy as np
from numpy import exp, cos, sin

PARAMETERS = (
    "amplitude",
    "x_centre",
    "y_centre",
    "semimajor",
    "semiminor",
    "theta",
)

# FWHM = FWHM_PER_SIGMA * standard deviation
FWHM_PER_SIGMA = 2.0 * np.sqrt(2.0 * np.log(2.0))


def quadratic_coefficients(semimajor, semiminor, theta):
    """Return the coefficients (a, b, c) of the quadratic form of the
    exponent.

    """
    cos2 = cos(theta) ** 2
    sin2 = sin(theta) ** 2
    inv_major = 1.0 / semimajor**2
    inv_minor = 1.0 / semiminor**2
    a = 0.5 * (cos2 * inv_major + sin2 * inv_minor)
    b = 0.25 * sin(2.0 * theta) * (inv_major - inv_minor)
    c = 0.5 * (sin2 * inv_major + cos2 * inv_minor)
    return a, b, c


def gaussian(amplitude, x_centre, y_centre, semimajor, semiminor, theta):
    """Return a 2D Gaussian function with the given parameters.

    Parameters
    ----------
    amplitude : float
        Peak value of the 2D Gaussian.
    x_centre : float
        x (column) centre of the Gaussian.
    y_centre : float
        y (row) centre of the Gaussian.
    semimajor : float
        Standard deviation along the major axis.
    semiminor : float
        Standard deviation along the minor axis.
    theta : float
        Angle of the major axis in radians, measured from the x axis towards
        the y axis.

    Returns
    -------
    function
        2D Gaussian function of pixel coordinates (x, y).

    """
    a, b, c = quadratic_coefficients(semimajor, semiminor, theta)
    return lambda x, y: amplitude * exp(
        -(
            a * (x - x_centre) ** 2
            + 2.0 * b * (x - x_centre) * (y - y_centre)
            + c * (y - y_centre) ** 2
        )
    )


def jac_gaussian(gaussianargs):
    """Return the Jacobian of a 2D anisotropic Gaussian.

    Parameters
    ----------
    gaussianargs : list or tuple
        The six Gaussian parameters, in the order of :data:`PARAMETERS`.

    Returns
    -------
    dict
        The derivatives along each of the six parameters of the Gaussian
        as functions of pixel coordinates (x, y), keyed by parameter name.

    """
    amplitude, x_centre, y_centre, semimajor, semiminor, theta = gaussianargs
    a, b, c = quadratic_coefficients(semimajor, semiminor, theta)

    cos2 = cos(theta) ** 2
    sin2 = sin(theta) ** 2
    sin_2t = sin(2.0 * theta)
    cos_2t = cos(2.0 * theta)
    major3 = semimajor**3
    minor3 = semiminor**3
    inv_major = 1.0 / semimajor**2
    inv_minor = 1.0 / semiminor**2

    # Derivatives of (a, b, c) with respect to the shape parameters
    d_major = (-cos2 / major3, -0.5 * sin_2t / major3, -sin2 / major3)
    d_minor = (-sin2 / minor3, 0.5 * sin_2t / minor3, -cos2 / minor3)
    d_theta = (
        0.5 * sin_2t * (inv_minor - inv_major),
        0.5 * cos_2t * (inv_major - inv_minor),
        0.5 * sin_2t * (inv_major - inv_minor),
    )

    def expon(x, y):
        dx = x - x_centre
        dy = y - y_centre
        return exp(-(a * dx**2 + 2.0 * b * dx * dy + c * dy**2))

    def shape_derivative(coefficients):
        da, db, dc = coefficients

        def derivative(x, y):
            dx = x - x_centre
            dy = y - y_centre
            return (
                -amplitude
                * expon(x, y)
                * (da * dx**2 + 2.0 * db * dx * dy + dc * dy**2)
            )

        return derivative

    def dg_dh(x, y):
        return expon(x, y)

    def dg_dx0(x, y):
        return (
            2.0
            * amplitude
            * expon(x, y)
            * (a * (x - x_centre) + b * (y - y_centre))
        )

    def dg_dy0(x, y):
        return (
            2.0
            * amplitude
            * expon(x, y)
            * (b * (x - x_centre) + c * (y - y_centre))
        )

    jacobian = {
        "amplitude": dg_dh,
        "x_centre": dg_dx0,
        "y_centre": dg_dy0,
        "semimajor": shape_derivative(d_major),
        "semiminor": shape_derivative(d_minor),
        "theta": shape_derivative(d_theta),
    }

    return jacobian


def evaluate_model_on_pixel_grid(
    shape, amplitude, x_centre, y_centre, semimajor, semiminor, theta
):
    """Render a Gaussian on a pixel grid of the given (rows, columns) shape."""
    rows, cols = np.indices(shape, dtype=np.float64)
    return gaussian(amplitude, x_centre, y_centre, semimajor, semiminor, theta)(
        cols, rows
    )
