"""Serial framing, message layouts and a coordinator driver for Z-Stack ZNP."""

__version__ = "0.1.0"
__all__ = ["adapter", "framing", "protocol"]