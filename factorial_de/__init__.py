"""
factorial-de: design matrices, contrasts and result filtering for
two-factor RNA-Seq differential expression.
"""

from factorial_de.version import __version__

__all__ = ["__version__"]
