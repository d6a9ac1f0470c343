"""propsite package root."""

from propsite.errors import PropsiteError

__all__ = ["__version__", "PropsiteError"]

__version__ = "0.1.0"
