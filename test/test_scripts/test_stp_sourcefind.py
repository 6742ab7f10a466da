from pathlib import Path

import numpy as np
import pandas as pd

from stp_sourcefind.cli import main
from stp_sourcefind.testutil.decorators import duration
from stp_sourcefind.testutil.mock import SyntheticImage

CONFIG = Path(__file__).parent.parent / "data" / "config.toml"


def make_image(path):
    image = SyntheticImage(shape=(96, 80), noise=1.0, seed=21)
    image.add_source(30.0, 20.4, 30.2, 2.0, 1.5, 0.3)
    image.add_source(25.0, 60.1, 70.8, 2.5, 1.8, -0.6)
    np.save(path, image.data)


def run_stp_sourcefind(files, extra_args, out_dir):
    cli_args = [*map(str, files), "--config-file", str(CONFIG)]
    cli_args.extend(extra_args)
    cli_args.extend(["--output-dir", str(out_dir)])
    return main(cli_args)


@duration(10)
def test_stp_sourcefind_export(tmp_path, capsys):
    make_image(tmp_path / "image.npy")
    out_dir = tmp_path / "out"
    status = run_stp_sourcefind(
        [tmp_path / "image.npy"], ["--residuals", "--csv"], out_dir
    )
    assert status == 0

    output = capsys.readouterr().out
    assert "Processing" in output
    assert "islands: 2, fits: 2" in output

    # Check CSV
    assert Path(f"{out_dir}/image.csv").exists()
    df = pd.read_csv(f"{out_dir}/image.csv", skipinitialspace=True)
    assert len(df) == 2
    assert list(df["sign"]) == [1, 1]
    assert (df["amplitude"] > 20).all()

    # Check label map, enabled in the config file
    labelmap = np.load(f"{out_dir}/image.labelmap.npy")
    assert labelmap.shape == (96, 80)
    assert set(np.unique(labelmap)) == {0, 1, 2}

    # Check residuals
    residuals = np.load(f"{out_dir}/image.residuals.npy")
    assert residuals.shape == (96, 80)
    assert np.abs(residuals).max() < 8


def test_stp_sourcefind_no_export(tmp_path, capsys):
    make_image(tmp_path / "image.npy")
    status = run_stp_sourcefind(
        [tmp_path / "image.npy"], ["--no-gaussian-fitting"], tmp_path
    )
    assert status == 0
    assert "islands: 2, fits: 0" in capsys.readouterr().out
    assert not Path(f"{tmp_path}/image.csv").exists()
    assert not Path(f"{tmp_path}/image.residuals.npy").exists()
