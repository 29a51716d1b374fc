"""
Utility functions for time, logging and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided titles for object storage keys
- Ensuring directory creation with proper error handling
- Timezone-aware timestamps
- Process-wide logging setup
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

# Pattern to match characters that are not safe for storage keys
# Allows: alphanumeric characters, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9_-]+")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a storage-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, storage-safe label or the fallback value

    Example:
        >>> sanitize_label("Budget Q3 / 2024", "document")
        "budget_q3_2024"
        >>> sanitize_label("@#$", "document")
        "document"
    """
    # Collapse whitespace to underscores before stripping special characters
    cleaned = re.sub(r"\s+", "_", label.strip())
    cleaned = SANITIZE_PATTERN.sub("", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned).strip("-_").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # boto and urllib3 are chatty at INFO
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
