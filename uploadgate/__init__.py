"""UploadGate: file-upload admission gate."""

__version__ = "1.0.0"
