#!/usr/bin/env python
import re
from pathlib import Path

from setuptools import setup, find_packages

install_requires = """
    numpy
    scipy
    numba
    astropy
    tomli;python_version<"3.11"
    """.split()

extras_require = {
    "test": ["pytest", "pandas"],
}

stp_scripts = [
    "scripts/stp-sourcefind",
    ]

package_list = find_packages(where='.', exclude=['test', 'test.*'])

version = re.search(
    r'^__version__ = "([^"]+)"',
    (Path(__file__).parent / "stp_sourcefind" / "__init__.py").read_text(),
    re.MULTILINE,
).group(1)

setup(
    name="stp-sourcefind",
    version=version,
    packages=package_list,
    scripts=stp_scripts,
    description="Source finding and Gaussian fitting for radio images",
    python_requires=">=3.10",
    install_requires=install_requires,
    extras_require=extras_require,
)
