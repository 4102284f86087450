"""Utility functions for the reseller kernel."""

from reseller_kernel.utils.serialization import canonicalize_json, hash_payload

__all__ = ["canonicalize_json", "hash_payload"]
