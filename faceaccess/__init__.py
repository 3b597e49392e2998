"""Face registration and recognition service."""

__version__ = "1.0.0"
