"""Payment and stock consistency engine for the store bot."""

__version__ = "0.1.0"
