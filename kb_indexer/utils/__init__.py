"""
Utility functions
"""
from .logger import setup_logging
from .text_utils import extract_main_content, extract_links, normalize_whitespace, content_size_mb
from .url_safety import validate_public_url

__all__ = [
    "setup_logging",
    "extract_main_content",
    "extract_links",
    "normalize_whitespace",
    "content_size_mb",
    "validate_public_url",
]
