"""Command line interface to the STP sourcefinder.

Run as:

  $ stp-sourcefind file ...

For help with command line options:

  $ stp-sourcefind --help

Every option of the "Source finding parameters" and "Export parameters"
groups overrides the matching key of the ``[tool.stp.sourcefind]`` and
``[tool.stp.export]`` sections of the TOML file given by ``--config-file``.

"""

import argparse
import logging
import os.path
import pdb
import sys
from dataclasses import replace
from io import StringIO
from pathlib import Path

import astropy.io.fits as pyfits
import numpy

from stp_sourcefind.config import DiffMethod
from stp_sourcefind.config import MedianMethod
from stp_sourcefind.config import SolverType
from stp_sourcefind.config import read_conf
from stp_sourcefind.fitting import Gaussian2dFit
from stp_sourcefind.image import SourceFindImage

logger = logging.getLogger(__name__)


def construct_argument_parser():
    parser = argparse.ArgumentParser(
        description="STP sourcefinder options. These override the values "
        "specified in the TOML config file."
    )

    general_group = parser.add_argument_group("General")
    general_group.add_argument(
        "--config-file",
        help="""
        TOML file containing default input arguments to the sourcefinder.
        This is especially convenient when swapping between configurations
        for the same project.
    """,
    )
    general_group.add_argument(
        "--pdb",
        action="store_true",
        help="Enter the debugger when the application crashes.",
    )

    sf_group = parser.add_argument_group("Source finding parameters")
    sf_group.add_argument(
        "--detection-n-sigma",
        type=float,
        help="Detection threshold, in units of the background rms.",
    )
    sf_group.add_argument(
        "--analysis-n-sigma",
        type=float,
        help="Analysis threshold, in units of the background rms.",
    )
    sf_group.add_argument(
        "--rms-estimate",
        type=float,
        help="Use this background rms instead of estimating it.",
    )
    sf_group.add_argument(
        "--find-negative-sources",
        action=argparse.BooleanOptionalAction,
        help="Also detect islands below the background.",
    )
    sf_group.add_argument(
        "--sigma-clip-iters",
        type=int,
        help="Maximum number of sigma clipping iterations.",
    )
    sf_group.add_argument(
        "--clip-n-sigma",
        type=float,
        help="Sigma clipping limit, in units of the standard deviation.",
    )
    sf_group.add_argument(
        "--median-method",
        choices=[m.value for m in MedianMethod],
        help="Median algorithm for the background statistics.",
    )
    sf_group.add_argument(
        "--binapprox-bins",
        type=int,
        help="Number of bins of the binapprox median.",
    )
    sf_group.add_argument(
        "--compute-barycentre",
        action=argparse.BooleanOptionalAction,
        help="Compute island barycentres.",
    )
    sf_group.add_argument(
        "--gaussian-fitting",
        action=argparse.BooleanOptionalAction,
        help="Fit an elliptical Gaussian to every island.",
    )
    sf_group.add_argument(
        "--connectivity",
        type=int,
        choices=[4, 8],
        help="Pixel connectivity of islands.",
    )
    sf_group.add_argument(
        "--generate-labelmap",
        action=argparse.BooleanOptionalAction,
        help="Keep the island label map.",
    )
    sf_group.add_argument(
        "--source-min-area",
        type=int,
        help="Minimum number of pixels of an island.",
    )
    sf_group.add_argument(
        "--diff-method",
        choices=[m.value for m in DiffMethod],
        help="Jacobian computation for Gaussian fitting.",
    )
    sf_group.add_argument(
        "--solver-type",
        choices=[s.value for s in SolverType],
        help="Solver for Gaussian fitting.",
    )
    sf_group.add_argument(
        "--fit-margin",
        type=int,
        help="Pixels by which island boxes are grown for fitting.",
    )
    sf_group.add_argument(
        "--max-iterations",
        type=int,
        help="Iteration cap of the Gaussian fit solver.",
    )
    sf_group.add_argument(
        "--nr-threads",
        type=int,
        help="Number of threads for Gaussian fitting.",
    )
    sf_group.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Log every pipeline stage.",
    )

    export_group = parser.add_argument_group("Export parameters")
    export_group.add_argument(
        "--output-dir",
        help="""
        The directory in which to store the output files.
    """,
    )
    export_group.add_argument(
        "--labelmap",
        action="store_true",
        default=None,
        help="Save the island label map (.npy)",
    )
    export_group.add_argument(
        "--residuals",
        action="store_true",
        default=None,
        help="Save the Gaussian fit residual map (.npy)",
    )
    export_group.add_argument(
        "--csv",
        action="store_true",
        default=None,
        help="Generate a csv text file with one row per source",
    )

    # Positional: the images to process
    parser.add_argument("files", nargs="+", help="Image files for processing")
    return parser


def handle_args(args=None):
    """Parse the command line and merge it with the configuration file.

    Options left out on the command line parse to None and keep the value
    from the configuration file.

    Returns
    -------
    conf : config.Conf
    files : list of str

    """
    parser = construct_argument_parser()
    arguments = vars(parser.parse_args(args))

    if arguments["pdb"]:

        def excepthook(type, value, traceback):
            pdb.post_mortem(traceback)

        sys.excepthook = excepthook

    conf = read_conf(arguments["config_file"])

    given = {
        group.title: {
            action.dest: arguments[action.dest]
            for action in group._group_actions
            if arguments.get(action.dest) is not None
        }
        for group in parser._action_groups
    }

    # replace() does not recurse into the nested dataclasses
    conf = replace(
        conf,
        sourcefind=replace(
            conf.sourcefind, **given["Source finding parameters"]
        ),
        export=replace(conf.export, **given["Export parameters"]),
    )
    return conf, arguments["files"]


def load_image(filename):
    """Read a 2D image from a FITS or ``.npy`` file.

    For FITS files the primary HDU is read and degenerate axes are removed;
    of a data cube the first plane is used. Rows and columns are kept as
    stored, so x is the FITS NAXIS1 axis.

    """
    if str(filename).endswith(".npy"):
        return numpy.load(filename)
    with pyfits.open(filename) as hdulist:
        data = numpy.float64(hdulist[0].data.squeeze())
    while data.ndim > 2:
        logger.warning(
            "Loaded datacube with %d dimensions, taking plane 0.", data.ndim
        )
        data = data[0]
    return data


def csv(sourcelist):
    """
    Return a string containing a csv from the extracted sources.
    """
    output = StringIO()
    print(
        "label, sign, npix, x, y, peak, amplitude, semimajor, semiminor, "
        "theta",
        file=output,
    )
    for island in sourcelist:
        fit = island.fit
        if fit is None:
            fit = Gaussian2dFit(*([numpy.nan] * 6))
        values = (
            island.extremum_x_idx if numpy.isnan(island.xbar) else island.xbar,
            island.extremum_y_idx if numpy.isnan(island.ybar) else island.ybar,
            island.extremum_val,
            fit.amplitude,
            fit.semimajor,
            fit.semiminor,
            fit.theta,
        )
        print(
            f"{island.label:d}, {island.sign:d}, {island.npix:d}, "
            + ", ".join(f"{float(v):.6f}" for v in values),
            file=output,
        )
    return output.getvalue()


def summary(filename, imagedata):
    """
    Return a string containing a human-readable summary of all sources
    found in an image.
    """
    output = StringIO()
    print("** %s **\n" % (filename), file=output)
    print(
        "Background: %g, rms: %g, islands: %d, fits: %d\n"
        % (
            imagedata.bg_level,
            imagedata.rms_est,
            len(imagedata.islands),
            len(imagedata.fits),
        ),
        file=output,
    )
    for island in imagedata.islands:
        print(
            "Island %d (sign %+d, %d pixels): peak %g at (%d, %d)"
            % (
                island.label,
                island.sign,
                island.npix,
                island.extremum_val,
                island.extremum_x_idx,
                island.extremum_y_idx,
            ),
            file=output,
        )
        if island.fit is not None:
            fit = island.fit
            print(
                "  Gaussian: amplitude %g, centre (%.3f, %.3f), "
                "axes (%.3f, %.3f), theta %.3f"
                % (
                    fit.amplitude,
                    fit.x_centre,
                    fit.y_centre,
                    fit.semimajor,
                    fit.semiminor,
                    fit.theta,
                ),
                file=output,
            )
        elif island.fit_failed:
            print("  Gaussian fit failed", file=output)
    return output.getvalue()


def run_sourcefinder(files, conf):
    """
    Run the source finder on each file in turn, writing the exports
    selected in ``conf.export`` to its output directory. Returns the
    concatenated per-file summaries.
    """
    output = StringIO()
    export_dir = Path(conf.export.output_dir)
    export_dir.mkdir(parents=True, exist_ok=True)

    sf_conf = conf.sourcefind
    if conf.export.labelmap and not sf_conf.generate_labelmap:
        sf_conf = replace(sf_conf, generate_labelmap=True)

    for counter, filename in enumerate(files):
        print(
            "Processing %s (file %d of %d)."
            % (filename, counter + 1, len(files))
        )
        imagename = os.path.splitext(os.path.basename(filename))[0]
        imagedata = SourceFindImage(load_image(filename), sf_conf)

        if conf.export.labelmap:
            numpy.save(
                export_dir / (imagename + ".labelmap.npy"), imagedata.label_map
            )
        if conf.export.residuals:
            numpy.save(
                export_dir / (imagename + ".residuals.npy"),
                imagedata.residual_image(),
            )
        if conf.export.csv:
            with open(export_dir / (imagename + ".csv"), "w") as csvfile:
                csvfile.write(csv(imagedata.islands))
        print(summary(filename, imagedata), end="", file=output)

    return output.getvalue()


def main(args=None):
    conf, files = handle_args(args)
    logging.basicConfig(
        level=logging.DEBUG if conf.sourcefind.debug else logging.WARNING
    )
    print(run_sourcefinder(files, conf), end="")
    return 0


if __name__ == "__main__":
    sys.exit(main())
