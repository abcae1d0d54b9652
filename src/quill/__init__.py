"""Quill - signer session control plane for desktop signing devices."""

__version__ = "0.4.0"
