"""
Tests for the sigma clipped background statistics.
"""
import unittest

import numpy as np
import pytest

from stp_sourcefind.config import MedianMethod
from stp_sourcefind.stats import binapprox_median
from stp_sourcefind.stats import compute_median
from stp_sourcefind.stats import estimate_rms
from stp_sourcefind.stats import estimate_stats


class GaussianNoiseTest(unittest.TestCase):
    """Statistics of pure white noise"""

    def setUp(self):
        self.mean = 5.0
        self.sigma = 2.0
        rng = np.random.default_rng(1234)
        self.data = rng.normal(self.mean, self.sigma, size=(200, 200))
        self.stats = estimate_stats(self.data)

    def testMean(self):
        self.assertAlmostEqual(self.stats.mean, self.mean, delta=0.05)

    def testMedian(self):
        self.assertAlmostEqual(self.stats.median, self.mean, delta=0.05)

    def testSigma(self):
        # Clipping at 3 sigma slightly underestimates the width of a normal
        # distribution.
        self.assertAlmostEqual(self.stats.sigma, self.sigma, delta=0.1)
        self.assertLess(self.stats.sigma, self.data.std())

    def testValid(self):
        self.assertTrue(self.stats.sigma_valid)
        self.assertGreater(self.stats.n_valid, 0.98 * self.data.size)
        self.assertLess(self.stats.n_valid, self.data.size)
        self.assertGreaterEqual(self.stats.iterations, 1)

    def testRms(self):
        self.assertEqual(estimate_rms(self.data), self.stats.sigma)


class OutlierTest(unittest.TestCase):
    """A single extreme outlier is clipped away"""

    def setUp(self):
        rng = np.random.default_rng(42)
        self.clean = rng.normal(0.0, 1.0, size=(100, 100))
        self.dirty = self.clean.copy()
        self.dirty[17, 23] = 1e6

    def testInvariance(self):
        clean = estimate_stats(self.clean, iters=10)
        dirty = estimate_stats(self.dirty, iters=10)
        self.assertAlmostEqual(clean.mean, dirty.mean, delta=0.01)
        self.assertAlmostEqual(clean.sigma, dirty.sigma, delta=0.01)
        self.assertAlmostEqual(clean.median, dirty.median, delta=0.01)

    def testUnclipped(self):
        unclipped = estimate_stats(self.dirty, iters=0)
        self.assertEqual(unclipped.iterations, 0)
        self.assertAlmostEqual(
            unclipped.mean, self.dirty.mean(), delta=1e-9 * abs(self.dirty.mean())
        )
        self.assertAlmostEqual(
            unclipped.sigma, self.dirty.std(), delta=1e-9 * self.dirty.std()
        )
        self.assertGreater(unclipped.sigma, 100)


def test_invalid_pixels_ignored():
    rng = np.random.default_rng(7)
    data = rng.normal(0.0, 1.0, size=(50, 50))
    with_nans = data.copy()
    with_nans[::7, ::3] = np.nan
    with_nans[1, 1] = np.inf
    finite = with_nans[np.isfinite(with_nans)]
    assert estimate_stats(with_nans) == estimate_stats(finite)


def test_flat_image():
    stats = estimate_stats(np.full((10, 10), 3.0))
    assert stats.mean == 3.0
    assert stats.median == 3.0
    assert stats.sigma == 0.0
    assert not stats.sigma_valid


@pytest.mark.parametrize(
    "data",
    [
        np.full((4, 4), np.nan),
        np.empty((0, 0)),
    ],
)
def test_no_valid_pixels(data):
    stats = estimate_stats(data)
    assert not stats.sigma_valid
    assert np.isnan(stats.sigma)
    assert stats.n_valid == 0


def test_single_valid_pixel():
    data = np.full((3, 3), np.nan)
    data[1, 1] = 2.5
    stats = estimate_stats(data)
    assert not stats.sigma_valid
    assert stats.mean == 2.5
    assert stats.n_valid == 1


def test_collapsed_clipping_keeps_last_estimate():
    # Clipping the bright pixels leaves only identical values.
    data = np.zeros(1010)
    data[:10] = 100.0
    stats = estimate_stats(data)
    assert not stats.sigma_valid
    assert stats.mean == pytest.approx(data.mean())
    assert stats.sigma == pytest.approx(data.std())
    assert np.isfinite(stats.sigma)


@pytest.mark.parametrize("nbins", [10, 100, 1000])
def test_binapprox_accuracy(nbins):
    rng = np.random.default_rng(nbins)
    values = rng.normal(3.0, 2.0, size=10001)
    approx = binapprox_median(values, nbins)
    assert abs(approx - np.median(values)) <= values.std() / nbins + 1e-12


def test_binapprox_constant():
    assert binapprox_median(np.full(11, 4.0), 100) == 4.0


@pytest.mark.parametrize(
    "method, expected",
    [
        (MedianMethod.EXACT, 2.0),
        ("exact", 2.0),
        (MedianMethod.ZERO, 0.0),
    ],
)
def test_compute_median(method, expected):
    assert compute_median(np.array([1.0, 2.0, 10.0]), method) == expected


def test_median_methods_agree():
    rng = np.random.default_rng(3)
    data = rng.normal(-1.0, 0.5, size=(128, 128))
    exact = estimate_stats(data, median_method=MedianMethod.EXACT)
    approx = estimate_stats(
        data, median_method=MedianMethod.BINAPPROX, binapprox_bins=1000
    )
    assert approx.median == pytest.approx(exact.median, abs=0.5 / 1000 * 2)
    assert approx.mean == pytest.approx(exact.mean, abs=0.01)
    assert approx.sigma == pytest.approx(exact.sigma, abs=0.01)


def test_zero_median_clips_around_zero():
    rng = np.random.default_rng(5)
    data = rng.normal(0.0, 1.0, size=(100, 100))
    stats = estimate_stats(data, median_method="zero")
    assert stats.median == 0.0
    assert stats.sigma == pytest.approx(1.0, abs=0.05)
