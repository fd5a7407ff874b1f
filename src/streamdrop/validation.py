"""Request input validation helpers for StreamDrop.

These functions enforce key, header, and media-type rules independently of
any HTTP handler so they can be unit-tested in isolation.

Each function raises ``ValidationError`` (or ``PayloadTooLarge``) on
invalid input.
"""

from streamdrop.errors import PayloadTooLarge, ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MAX_KEY_BYTES = 1024


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_object_key(key: str) -> None:
    """Validate an object key taken from the request path.

    Keys are slash-separated paths. Empty keys, keys with a leading slash,
    empty segments, and ``.``/``..`` segments are rejected.

    Args:
        key: The object key string.

    Raises:
        ValidationError: If the key is not acceptable.
    """
    if not key:
        raise ValidationError("Object key is required")
    if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
        raise ValidationError(f"Object key exceeds {_MAX_KEY_BYTES} bytes")
    if key.startswith("/"):
        raise ValidationError("Object key must not start with '/'")
    for segment in key.split("/"):
        if segment in ("", ".", ".."):
            raise ValidationError(f"Invalid object key: {key}")
    if "\x00" in key:
        raise ValidationError("Object key must not contain NUL bytes")


def is_reserved_key(key: str, chunk_prefix: str) -> bool:
    """Return True if ``key`` lies under the chunk staging prefix."""
    return key == chunk_prefix or key.startswith(f"{chunk_prefix}/")


def validate_writable_key(key: str, chunk_prefix: str) -> None:
    """Validate a key a client is about to write or delete.

    Keys under the chunk staging prefix are reserved for chunk records.

    Raises:
        ValidationError: If the key is invalid or reserved.
    """
    validate_object_key(key)
    if is_reserved_key(key, chunk_prefix):
        raise ValidationError(f"Keys under '{chunk_prefix}/' are reserved")


def parse_int(value: str | int | None, name: str, minimum: int = 0) -> int:
    """Parse a non-negative integer request parameter.

    Args:
        value: The raw header or body value.
        name: Parameter name, used in the error message.
        minimum: Smallest accepted value.

    Returns:
        The parsed integer.

    Raises:
        ValidationError: If the value is missing, not an integer, or below
            ``minimum``.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} is required")
    if isinstance(value, int):
        n = value
    else:
        text = str(value).strip()
        if not text.isdigit():
            raise ValidationError(f"{name} must be an integer")
        n = int(text)
    if n < minimum:
        raise ValidationError(f"{name} must be at least {minimum}")
    return n


def normalize_content_type(content_type: str | None) -> str:
    """Strip parameters and case from a Content-Type value.

    ``"Video/MP4; codecs=avc1"`` becomes ``"video/mp4"``.
    """
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def validate_content_type(content_type: str | None, allowed: list[str]) -> str:
    """Check a media type against the configured allow list.

    An empty allow list accepts every type.

    Returns:
        The normalized media type.

    Raises:
        ValidationError: If the type is missing or not allowed.
    """
    normalized = normalize_content_type(content_type)
    if not normalized:
        raise ValidationError("Content type is required")
    if allowed and normalized not in {normalize_content_type(t) for t in allowed}:
        raise ValidationError(f"Invalid file type: {normalized}")
    return normalized


def check_declared_length(content_length: str | None, limit: int) -> int | None:
    """Reject a request early when its Content-Length exceeds ``limit``.

    Returns:
        The declared length, or None when the header is absent.

    Raises:
        ValidationError: If the header is not an integer.
        PayloadTooLarge: If the declared length exceeds ``limit``.
    """
    if content_length is None:
        return None
    declared = parse_int(content_length, "Content-Length")
    if declared > limit:
        raise PayloadTooLarge(f"File too large: {declared} bytes exceeds limit of {limit}")
    return declared
