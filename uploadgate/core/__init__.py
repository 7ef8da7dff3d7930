"""UploadGate core admission components.

This package contains the policy store, the staging manager, the capability
adapters wrapping external inspectors, and the admission pipeline that
combines them into a single accept/reject verdict.
"""
