"""
Pure pipeline stages: rate-limit guard and inference sanitizing.
"""

from .rate_limit import ensure_within_rate_limit, parse_usage_header, should_halt
from .sanitizer import (
    build_instants,
    complete_fields,
    is_accepted,
    parse_inference,
    sanitize,
    to_extracted_event,
)

__all__ = [
    "build_instants",
    "complete_fields",
    "ensure_within_rate_limit",
    "is_accepted",
    "parse_inference",
    "parse_usage_header",
    "sanitize",
    "should_halt",
    "to_extracted_event",
]
