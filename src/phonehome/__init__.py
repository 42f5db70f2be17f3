"""phonehome — watch which TCP connections a command opens."""

__version__ = "0.1.0"
