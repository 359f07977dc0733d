"""Tableside: device session coordination for QR table ordering."""

__version__ = "1.0.0"
