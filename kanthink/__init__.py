"""
KANTHINK — board automation and AI card generation.
"""

from kanthink.identity import __version__

__all__ = ["__version__"]
