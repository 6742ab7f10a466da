"""Source finding for the Slow Transients Pipeline.

Background estimation, island detection and Gaussian characterisation of
sources in a single 2D image.

"""

__version__ = "0.3.0"
