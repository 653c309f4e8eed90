import hashlib
import os
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog

logger = structlog.get_logger()

def configure_logging() -> None:
    """Configure structlog the same way for the API and the worker."""
    import logging

    logging.basicConfig(format="%(message)s", level=os.getenv("LOG_LEVEL", "INFO").upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

def new_record_id() -> str:
    """Generate a new unique record ID."""
    return str(uuid.uuid4())

def generate_download_token() -> str:
    """Opaque 256-bit download token, hex encoded."""
    return secrets.token_hex(32)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def sha256_hex(data) -> str:
    """SHA-256 of a str or bytes value."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()

def file_extension_from_path(file_path: str, default: str = "bin") -> str:
    """
    Extract the extension of an uploaded media object path.

    "media/abc123/original.JPG" -> "JPG", case preserved to match the stored
    object key. Paths without an extension fall back to `default`.
    """
    if not file_path:
        return default
    _, ext = os.path.splitext(os.path.basename(file_path))
    ext = ext.lstrip(".")
    return ext or default

def media_storage_key(original_hash: str, extension: str) -> str:
    """Private object store key of the original media file."""
    return f"media/{original_hash}/original.{extension}"

def short_hash(original_hash: str, length: int = 8) -> str:
    return (original_hash or "")[:length]

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

def is_free_signature(tx_signature: Optional[str], prefix: str) -> bool:
    return bool(tx_signature) and tx_signature.startswith(prefix)
