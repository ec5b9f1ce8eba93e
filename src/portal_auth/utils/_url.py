from urllib.parse import urlencode, urlparse


def get_origin(url: str) -> str:
    parsed = urlparse(url)

    return f"{parsed.scheme}://{parsed.netloc}"


def build_absolute_url(
    request_url: str, path: str, base_url: str | None = None
) -> str:
    """
    Build an absolute URL for a path inside this application.

    If base_url is provided, it will be used instead of the request's origin.
    This is useful for scenarios where the internal request URL differs from the
    external-facing URL (e.g., Docker containers, reverse proxies).
    """
    base = (base_url or get_origin(request_url)).rstrip("/")

    return f"{base}/{path.lstrip('/')}"


def with_query(url: str, query_params: dict[str, str | None]) -> str:
    params = {key: value for key, value in query_params.items() if value is not None}

    if not params:
        return url

    separator = "&" if urlparse(url).query else "?"

    return f"{url}{separator}{urlencode(params, safe='/')}"
