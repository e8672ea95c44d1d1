"""KNXnet/IP discovery and diagnostic tools."""

__version__ = "0.1.0"
