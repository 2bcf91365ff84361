"""Utility functions and helpers."""

from lurus_api.utils.logging import JSONFormatter, configure_json_logging
from lurus_api.utils.sanitize import mask_phone, payload_hash_bytes, sanitize_obj, sanitize_str

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "mask_phone",
    "payload_hash_bytes",
    "sanitize_obj",
    "sanitize_str",
]
