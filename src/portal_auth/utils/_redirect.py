from urllib.parse import urlparse

DEFAULT_REDIRECT = "/profile"


def sanitize_redirect(value: str | None, default: str = DEFAULT_REDIRECT) -> str:
    """Return value if it is an in-application relative path, else default.

    Rejects absolute URLs, protocol-relative targets (``//evil.com``),
    backslash tricks (``/\\evil.com``) and anything with control characters.
    """
    if not value:
        return default

    value = value.strip()

    if not value.startswith("/") or value.startswith("//"):
        return default

    if "\\" in value or any(ord(char) < 0x20 or ord(char) == 0x7F for char in value):
        return default

    parsed = urlparse(value)

    if parsed.scheme or parsed.netloc:
        return default

    return value
