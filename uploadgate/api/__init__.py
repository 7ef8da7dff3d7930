"""HTTP transport for UploadGate."""
