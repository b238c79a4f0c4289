"""Eddystone-URL beacon scanner with page previews."""

__version__ = "1.0.0"
