from __future__ import annotations

from urllib.parse import urljoin, urlparse, urlunparse


def is_http_url(value: str) -> bool:
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme.lower() in {"http", "https"} and bool(parsed.netloc)


def url_path(value: str) -> str:
    try:
        return urlparse(value).path.lower()
    except ValueError:
        return ""


def url_origin(value: str) -> str:
    parsed = urlparse(value)
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def absolutize(raw: str, base_url: str) -> str | None:
    """Resolve a link against its page, dropping fragments and non-http targets."""
    try:
        absolute = urlparse(urljoin(base_url, raw.strip()))
    except ValueError:
        return None
    if absolute.scheme.lower() not in {"http", "https"} or not absolute.netloc:
        return None
    return urlunparse(absolute._replace(fragment=""))
