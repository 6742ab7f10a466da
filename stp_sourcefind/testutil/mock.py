"""
Synthetic images with known sources for use in testing.
"""
from dataclasses import dataclass

import numpy as np

from stp_sourcefind.gaussian import evaluate_model_on_pixel_grid


@dataclass(frozen=True)
class MockSource:
    """Parameters of an elliptical Gaussian inserted in a synthetic image.

    Widths are standard deviations in pixels; ``x`` is the column, ``y``
    the row.

    """

    amplitude: float
    x: float
    y: float
    semimajor: float = 1.5
    semiminor: float = 1.5
    theta: float = 0.0


def make_gaussian_image(
    shape, sources=(), noise=0.0, background=0.0, seed=None
):
    """Return an image of Gaussian sources on a noisy background.

    Parameters
    ----------
    shape : tuple
        (rows, columns) of the image.
    sources : iterable of MockSource
        Sources to add.
    noise : float, default: 0.0
        Standard deviation of the white Gaussian noise.
    background : float, default: 0.0
        Constant background level.
    seed : int, default: None
        Seed of the noise generator; fixed seeds give identical images.

    """
    image = np.full(shape, background, dtype=np.float64)
    if noise:
        image += np.random.default_rng(seed).normal(0.0, noise, size=shape)
    for source in sources:
        image += evaluate_model_on_pixel_grid(
            shape,
            source.amplitude,
            source.x,
            source.y,
            source.semimajor,
            source.semiminor,
            source.theta,
        )
    return image


class SyntheticImage(object):
    def __init__(self, shape=(128, 128), noise=1.0, background=0.0, seed=0):
        """Build up a synthetic image source by source.

        Parameters
        ----------
        shape : tuple, default: (128, 128)
            (rows, columns) of the image.
        noise : float, default: 1.0
            Standard deviation of the background noise.
        background : float, default: 0.0
            Constant background level.
        seed : int, default: 0
            Seed of the noise generator.

        """
        self.shape = shape
        self.noise = noise
        self.background = background
        self.seed = seed
        self.sources = []

    def add_source(self, amplitude, x, y, semimajor=1.5, semiminor=None,
                   theta=0.0):
        if semiminor is None:
            semiminor = semimajor
        self.sources.append(
            MockSource(amplitude, x, y, semimajor, semiminor, theta)
        )
        return self

    @property
    def data(self):
        return make_gaussian_image(
            self.shape, self.sources, self.noise, self.background, self.seed
        )
