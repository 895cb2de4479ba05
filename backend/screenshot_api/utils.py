"""
Utility functions
"""

import base64
import io
import re
import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import urlparse

from PIL import Image, UnidentifiedImageError

FORMAT_EXTENSIONS = {"jpeg": "jpeg", "png": "png"}


def is_valid_url(url: str) -> bool:
    """Check that url is an absolute http(s) URL with a host"""
    try:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.hostname)
    except ValueError:
        return False


def hostname_of(url: str) -> Optional[str]:
    """Lower-cased hostname, or None when the URL does not parse"""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return None
    return hostname.lower() if hostname else None


def sanitize_hostname(hostname: Optional[str]) -> str:
    """Make a hostname safe for use inside a storage key"""
    if not hostname:
        return "unknown"
    cleaned = re.sub(r'[^a-z0-9]+', '-', hostname.lower()).strip('-')
    return cleaned or "unknown"


def generate_storage_key(url: str, format: str, prefix: str = "screenshot") -> str:
    """Build a collision-resistant object key for a capture of url"""
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    suffix = secrets.token_hex(4)
    extension = FORMAT_EXTENSIONS.get(format, format)
    return f"{prefix}-{sanitize_hostname(hostname_of(url))}-{timestamp}-{suffix}.{extension}"


def to_data_url(data: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode()}"


def measure_raster(data: bytes, fallback: Tuple[int, int]) -> Tuple[int, int]:
    """Read the pixel size of an encoded image, or return fallback"""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, OSError):
        return fallback
