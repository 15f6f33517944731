"""CoreOS image customizer - rebuild a stock initram with extra resources.

This package downloads a stock kernel and initram, merges a directory of
resource files into the SquashFS image embedded in the initram, and repacks
the result for network boot.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
