import os
import re
import uuid

import structlog

logger = structlog.get_logger()

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def new_session_id() -> str:
    """Generate a new unique session ID for log correlation."""
    return str(uuid.uuid4())


def is_address(value: str) -> bool:
    return bool(value) and bool(ADDRESS_PATTERN.match(value))


def same_address(a: str, b: str) -> bool:
    """Case-insensitive address comparison (checksum casing is irrelevant)."""
    return bool(a) and bool(b) and a.lower() == b.lower()


def format_file_size(size_bytes: int) -> str:
    """Format file size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024 and i < len(size_names) - 1:
        size_bytes /= 1024.0
        i += 1

    return f"{size_bytes:.1f} {size_names[i]}"


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safe storage."""
    if not filename:
        return "unnamed_file"

    # Keep only alphanumeric, dots, dashes, underscores
    sanitized = re.sub(r'[^\w\-_\.]', '_', filename)
    sanitized = re.sub(r'_{2,}', '_', sanitized)

    if sanitized.startswith('.'):
        sanitized = 'file_' + sanitized

    if len(sanitized) > 255:
        name, ext = os.path.splitext(sanitized)
        sanitized = name[:255-len(ext)] + ext

    return sanitized


def chunked(items: list, size: int):
    """Yield consecutive slices of ``items`` of at most ``size`` elements."""
    if size < 1:
        raise ValueError("size must be at least 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]
