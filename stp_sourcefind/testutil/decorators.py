"""
Skip decorators for tests that depend on data, optional modules or time.
"""
import importlib.util
import os
import unittest


def _run_unless(reason):
    """Return a skip decorator if ``reason`` is set, else a no-op."""
    if reason:
        return unittest.skip(reason)
    return lambda func: func


def requires_data(*paths):
    """Skip the test unless every file in ``paths`` exists."""
    missing = [path for path in paths if not os.path.exists(path)]
    return _run_unless(
        missing
        and "Test data (%s) not available" % ", ".join(map(str, missing))
    )


def requires_module(module_name):
    """Skip the test if ``module_name`` cannot be imported."""
    return _run_unless(
        importlib.util.find_spec(module_name) is None
        and "Required module (%s) not available" % module_name
    )


def duration(test_duration):
    """Skip tests expected to take longer than ``STP_MAXTESTDURATION``.

    Parameters
    ----------
    test_duration : float
        Expected run time of the test in seconds.

    Notes
    -----
    The limit is read from the environment, in seconds; when it is unset or
    zero every test runs.

    """
    max_duration = float(os.environ.get("STP_MAXTESTDURATION", 0))
    return _run_unless(
        0 < max_duration < test_duration
        and "Tests of duration > %s s disabled with STP_MAXTESTDURATION"
        % max_duration
    )
