"""Watch imageboard threads and download each new image exactly once."""

__version__ = "1.0.0"
