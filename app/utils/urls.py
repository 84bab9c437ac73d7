from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


def normalize_origin(value: Optional[str]) -> Optional[str]:
    """Return scheme://host[:port] for an http(s) URL, or None if it is not one."""
    if not value:
        return None
    parsed = urlparse(value.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        return None
    origin = f"{parsed.scheme}://{parsed.hostname.lower()}"
    if parsed.port and not (
        (parsed.scheme == "http" and parsed.port == 80) or (parsed.scheme == "https" and parsed.port == 443)
    ):
        origin = f"{origin}:{parsed.port}"
    return origin


def append_query_params(url: str, params: Dict[str, str]) -> str:
    parsed = urlparse(url)
    query = [(key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True) if key not in params]
    query.extend(params.items())
    return urlunparse(parsed._replace(query=urlencode(query)))
