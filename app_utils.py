# app_utils.py
# Version: 0.2.0
# Shared utility functions for the SMART test scheduler: hashing for the config banner,
# string-to-value parsing, human-readable durations and the host name.

import hashlib
import socket
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)

_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off")
BOOL_STRINGS = _TRUE_STRINGS + _FALSE_STRINGS

def sha256_head(path: Path, n: int = 16) -> str:
    """Get first n characters of SHA256 hash of file at path."""
    try:
        sha256_hash = hashlib.sha256()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(4096), b""):
                sha256_hash.update(chunk)
        return sha256_hash.hexdigest()[:n]
    except OSError as e:
        logger.warning(f"Could not compute SHA256 for {path}: {e}")
        return "unknown"

def parse_bool(value, default: bool = False) -> bool:
    """Parse a bool from config/env text.

    Args:
        value: bool, string or None

    Returns:
        Parsed value, or default when the text is not recognised
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    logger.warning(f"Unrecognised boolean value {value!r}, using {default}")
    return default

def parse_int(value, default: Optional[int] = None) -> Optional[int]:
    """Parse a non-negative integer, returning default for anything else."""
    if value is None:
        return default
    text = str(value).strip()
    if not (text.isascii() and text.isdigit()):
        return default
    return int(text)

def format_timespan(seconds: float) -> str:
    """Format seconds as human-readable timespan."""
    if seconds < 0:
        return "0s"

    if seconds < 60:
        return f"{int(seconds + 0.5)}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        remaining_seconds = int(seconds % 60 + 0.5)
        return f"{minutes}m{remaining_seconds}s"
    else:
        hours = int(seconds // 3600)
        remaining_minutes = int((seconds % 3600) // 60)
        return f"{hours}h{remaining_minutes}m"

def host_name() -> str:
    """Fully qualified host name, falling back to the short name."""
    try:
        name = socket.getfqdn()
    except OSError:
        name = ""
    return name or socket.gethostname()
