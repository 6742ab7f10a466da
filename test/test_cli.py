"""
Tests for the command line driver: argument handling, image loading and
the text outputs.
"""
import os

import numpy as np
import pytest

from stp_sourcefind.cli import csv
from stp_sourcefind.cli import handle_args
from stp_sourcefind.cli import load_image
from stp_sourcefind.cli import summary
from stp_sourcefind.config import ExportSettings
from stp_sourcefind.config import SourceFindConf
from stp_sourcefind.image import source_find_image
from stp_sourcefind.testutil.decorators import requires_data
from stp_sourcefind.testutil.decorators import requires_module
from stp_sourcefind.testutil.mock import MockSource
from stp_sourcefind.testutil.mock import make_gaussian_image

from .conftest import DATAPATH

CONFIG = os.path.join(DATAPATH, "config.toml")


def test_defaults():
    conf, files = handle_args(["image.npy"])
    assert files == ["image.npy"]
    assert conf.sourcefind == SourceFindConf()
    assert conf.export == ExportSettings()


def test_overrides():
    conf, files = handle_args(
        [
            "a.npy",
            "b.fits",
            "--detection-n-sigma", "7",
            "--connectivity", "8",
            "--no-find-negative-sources",
            "--gaussian-fitting",
            "--solver-type", "line_search_bfgs",
            "--nr-threads", "3",
            "--debug",
            "--output-dir", "/tmp/out",
            "--csv",
        ]
    )
    assert files == ["a.npy", "b.fits"]
    sf = conf.sourcefind
    assert sf.detection_n_sigma == 7.0
    assert sf.connectivity == 8
    assert not sf.find_negative_sources
    assert sf.gaussian_fitting
    assert sf.solver_type == "line_search_bfgs"
    assert sf.nr_threads == 3
    assert sf.debug
    # Untouched options keep their defaults
    assert sf.analysis_n_sigma == 3.0
    assert conf.export.output_dir == "/tmp/out"
    assert conf.export.csv
    assert not conf.export.labelmap


@requires_data(CONFIG)
def test_config_file():
    conf, _ = handle_args(["image.npy", "--config-file", CONFIG])
    assert conf.sourcefind.detection_n_sigma == 6.0
    assert conf.sourcefind.median_method == "binapprox"
    assert conf.export.labelmap


@requires_data(CONFIG)
def test_command_line_beats_config_file():
    conf, _ = handle_args(
        [
            "image.npy",
            "--config-file", CONFIG,
            "--detection-n-sigma", "8",
            "--find-negative-sources",
        ]
    )
    assert conf.sourcefind.detection_n_sigma == 8.0
    assert conf.sourcefind.find_negative_sources
    # From the file
    assert conf.sourcefind.connectivity == 8
    assert conf.sourcefind.source_min_area == 3


@pytest.mark.parametrize(
    "args",
    [
        ["image.npy", "--connectivity", "6"],
        ["image.npy", "--median-method", "mean"],
        [],
    ],
)
def test_bad_arguments(args):
    with pytest.raises(SystemExit):
        handle_args(args)


def test_load_npy(tmp_path):
    data = np.arange(12.0).reshape(3, 4)
    path = tmp_path / "image.npy"
    np.save(path, data)
    np.testing.assert_array_equal(load_image(str(path)), data)


@requires_module("astropy")
def test_load_fits(tmp_path):
    from astropy.io import fits

    data = np.arange(12.0).reshape(3, 4)
    path = tmp_path / "image.fits"
    fits.PrimaryHDU(data.reshape(1, 1, 3, 4)).writeto(path)
    loaded = load_image(str(path))
    assert loaded.dtype == np.float64
    np.testing.assert_array_equal(loaded, data)


@requires_module("astropy")
def test_load_fits_cube(tmp_path):
    from astropy.io import fits

    cube = np.arange(24.0, dtype=np.float32).reshape(2, 3, 4)
    path = tmp_path / "cube.fits"
    fits.PrimaryHDU(cube).writeto(path)
    np.testing.assert_array_equal(load_image(str(path)), cube[0])


@pytest.fixture(scope="module")
def result():
    data = make_gaussian_image(
        (64, 64),
        [
            MockSource(20.0, 20.2, 15.7, 2.0, 1.5, 0.2),
            MockSource(-20.0, 40.5, 45.3, 2.0, 1.5, 0.2),
        ],
    )
    # A flat island, which cannot be fitted
    data[55:58, 5:8] = 20.0
    return source_find_image(
        data, 5.0, 3.0, rms_estimate=1.0, gaussian_fitting=True, fit_margin=2
    )


def test_csv(result):
    lines = csv(result.islands).splitlines()
    assert lines[0].split(", ")[:3] == ["label", "sign", "npix"]
    assert len(lines) == 1 + len(result.islands)
    rows = [line.split(", ") for line in lines[1:]]
    assert [int(row[1]) for row in rows] == [1, -1, 1]
    assert all(len(row) == 10 for row in rows)
    assert float(rows[0][3]) == pytest.approx(20.2, abs=0.2)
    assert float(rows[1][6]) < 0
    # No fit for the flat island
    assert rows[2][6] == "nan"


def test_summary(result):
    text = summary("image.npy", result)
    assert text.startswith("** image.npy **")
    assert "islands: 3, fits: 2" in text
    assert text.count("Gaussian:") == 2
    assert "Gaussian fit failed" in text
