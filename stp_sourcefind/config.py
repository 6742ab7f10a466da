"""Configuration of the source finder.

Settings are frozen dataclasses whose fields are type checked on creation,
so a misspelt value in a TOML file fails early with the offending key in
the message.

"""

from collections import defaultdict
from dataclasses import dataclass
from dataclasses import fields
from dataclasses import is_dataclass
from enum import Enum
from pathlib import Path
import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from types import UnionType
from typing import get_args
from typing import get_origin
from typing import get_type_hints
from typing import Type
from warnings import warn


class MedianMethod(str, Enum):
    """Algorithm used for the median in background estimation."""

    EXACT = "exact"
    BINAPPROX = "binapprox"
    ZERO = "zero"


class DiffMethod(str, Enum):
    """How the Jacobian of the Gaussian residuals is obtained."""

    ANALYTIC = "analytic"
    ANALYTIC_SINGLE_BLOCK = "analytic_single_block"
    NUMERIC = "numeric"
    NUMERIC_SINGLE_BLOCK = "numeric_single_block"


class SolverType(str, Enum):
    """Nonlinear optimisation strategy used for Gaussian fitting."""

    LINE_SEARCH_BFGS = "line_search_bfgs"
    LINE_SEARCH_LBFGS = "line_search_lbfgs"
    TRUST_REGION_DENSE_QR = "trust_region_dense_qr"


# values of the key type are also accepted where one of the set is expected
_compat_types: defaultdict[type, set[type]] = defaultdict(set, {int: {float}})


def assert_t(key: str, value, *types: type):
    """Check that ``value`` is an instance of one of ``types``.

    An int passes where a float is expected. ``key`` names the option in
    the error message.

    Raises
    ------
    AssertionError

    """
    assert types, "need at least one type to assert"
    if isinstance(value, types) or _compat_types[type(value)] & set(types):
        return
    if len(types) > 1:
        expected = f"∉ {{{', '.join(map(str, types))}}}"
    else:
        expected = f"!= {types[0]}"
    raise AssertionError(f"{key}: type({value!r}) {expected}")


def validate_types(key: str, value, type_: type):
    """Validate ``value`` against a plain or union type hint.

    Other hints, such as parametrised generics, are not checked; a warning
    names the option.

    """
    origin_t = get_origin(type_)
    if origin_t is None:
        assert_t(key, value, type_)
    elif origin_t is UnionType:
        assert_t(key, value, *get_args(type_))
    else:
        warn(f"{key}: cannot validate values of type {type_}")


def validate_choice(key: str, value, enum_t: Type[Enum]):
    """Check that a string option names a member of ``enum_t``."""
    allowed = [member.value for member in enum_t]
    assert value in allowed, f"{key}: {value!r} ∉ {{{', '.join(allowed)}}}"


@dataclass(frozen=True)
class _Validate:
    def __post_init__(self):
        hints = get_type_hints(type(self))
        for field in fields(self):
            validate_types(
                field.name, getattr(self, field.name), hints[field.name]
            )


@dataclass(frozen=True)
class SourceFindConf(_Validate):
    """Configuration of a single source finding run on one image."""

    detection_n_sigma: float = 5.0
    """Detection threshold as multiple of the (clipped) standard deviation
    of the background. Every island must contain at least one pixel that
    deviates from the background mean by more than this.

    """

    analysis_n_sigma: float = 3.0
    """Analysis threshold as multiple of the background standard deviation.
    All connected pixels deviating by more than this form the island. Must
    not exceed ``detection_n_sigma``.

    """

    rms_estimate: float | None = None
    """Override for the background standard deviation. When not set it is
    estimated from the image by sigma clipping.

    """

    find_negative_sources: bool = True
    """Also detect islands of pixels below the background (sign -1)."""

    sigma_clip_iters: int = 5
    """Maximum number of sigma clipping iterations for the background
    statistics. 0 gives the plain (unclipped) moments.

    """

    clip_n_sigma: float = 3.0
    """Clipping limit, in standard deviations from the median, used in
    each sigma clipping iteration.

    """

    median_method: str = MedianMethod.EXACT.value
    """Median algorithm: "exact", "binapprox" (fast, approximate) or
    "zero" (background assumed to be zero).

    """

    binapprox_bins: int = 1000
    """Number of bins spanning one standard deviation either side of the
    mean for the binapprox median. The median error is bounded by
    sigma / binapprox_bins.

    """

    compute_barycentre: bool = True
    """Compute the intensity weighted barycentre of each island."""

    gaussian_fitting: bool = False
    """Fit an elliptical Gaussian to every island."""

    connectivity: int = 4
    """Island connectivity: 4 (edges only) or 8 (edges and corners)."""

    generate_labelmap: bool = False
    """Keep the island label map and threshold masks for diagnostics."""

    source_min_area: int = 1
    """Minimum number of pixels of an island."""

    diff_method: str = DiffMethod.ANALYTIC_SINGLE_BLOCK.value
    """Differentiation used for Gaussian fitting: "analytic",
    "analytic_single_block", "numeric" or "numeric_single_block".

    """

    solver_type: str = SolverType.TRUST_REGION_DENSE_QR.value
    """Solver used for Gaussian fitting: "line_search_bfgs",
    "line_search_lbfgs" or "trust_region_dense_qr".

    """

    fit_margin: int = 0
    """Number of pixels by which the bounding box of an island is grown
    to select the pixels used for its Gaussian fit.

    """

    max_iterations: int = 200
    """Iteration cap of the Gaussian fit solver."""

    nr_threads: int | None = None
    """The number of threads used to parallelize Gaussian fits to detected
    sources.
    """

    debug: bool = False
    """Emit the per-stage debug summaries of each run."""

    def __post_init__(self):  # noqa: D105
        super().__post_init__()
        validate_choice("median_method", self.median_method, MedianMethod)
        validate_choice("diff_method", self.diff_method, DiffMethod)
        validate_choice("solver_type", self.solver_type, SolverType)


@dataclass(frozen=True)
class ExportSettings(_Validate):
    """Selection of output of the command line driver."""

    output_dir: str = "."
    """Directory in which to write the output files."""

    labelmap: bool = False
    """Save the island label map (.npy)."""

    residuals: bool = False
    """Save the image with the fitted Gaussians subtracted (.npy)."""

    csv: bool = False
    """Write one row per island, with its fit if any, to a csv file."""


@dataclass(frozen=True)
class Conf:
    """Settings of a command line run."""

    sourcefind: SourceFindConf
    export: ExportSettings

    def __post_init__(self):  # noqa: D105
        # TOML tables arrive as dicts
        for key, field_t in get_type_hints(type(self)).items():
            value = getattr(self, key)
            if isinstance(value, dict) and is_dataclass(field_t):
                object.__setattr__(self, key, field_t(**value))


def normalize_none_values(val):
    """Replace the string "none", in any case, by None throughout ``val``.

    TOML has no null value, so unset options are written as "none".

    """
    match val:
        case dict():
            return {k: normalize_none_values(v) for k, v in val.items()}
        case list():
            return [normalize_none_values(v) for v in val]
        case str() if val.strip().lower() == "none":
            return None
    return val


def read_conf(path: str | Path | None):
    """Read ``[tool.stp]`` from a TOML file into a :class:`Conf`.

    With ``path=None`` the defaults are returned. Missing ``sourcefind`` or
    ``export`` tables also take their defaults.

    Raises
    ------
    KeyError
        If the file has no (or an empty) ``[tool.stp]`` section.

    """
    if path is None:
        return Conf(SourceFindConf(), ExportSettings())

    data = normalize_none_values(tomllib.loads(Path(path).read_text()))
    match data:
        case {"tool": {"stp": dict() as section}} if section:
            pass
        case {"tool": {"stp": dict()}}:
            raise KeyError("tool.stp: empty section in config file")
        case {"tool": dict()}:
            raise KeyError("tool.stp: section for stp missing in config file")
        case _:
            raise KeyError("tool: top-level section missing in config file")
    return Conf(
        sourcefind=section.get("sourcefind", {}),
        export=section.get("export", {}),
    )
