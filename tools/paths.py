"""Map an incoming request onto a file under the server root."""
from __future__ import annotations

import posixpath
from typing import Dict, NamedTuple, Optional
from urllib.parse import unquote, urlsplit

from tools.errors import InvalidRequest

DEFAULT_CONTENT_TYPE = "text/plain"

# Extension (no leading dot) -> MIME type. Lookup is case-sensitive.
CONTENT_TYPES: Dict[str, str] = {
    "css": "text/css",
    "js": "text/javascript",
    "mjs": "text/javascript",
    "map": "application/json",
    "json": "application/json",
    "html": "text/html",
    "htm": "text/html",
    "svg": "image/svg+xml",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "ico": "image/x-icon",
    "wasm": "application/wasm",
    "woff": "font/woff",
    "woff2": "font/woff2",
    "plain": DEFAULT_CONTENT_TYPE,
}


class ResolvedRequest(NamedTuple):
    server_path: str
    is_module_request: bool


def is_module_request(referer: Optional[str]) -> bool:
    """
    Browsers importing an ES module send the importing script as referer, and the
    import specifier carries no extension. A referer ending in ``.js`` is taken to
    mean the requested path needs ``.js`` appended.
    """
    if not referer:
        return False
    return referer.endswith(".js")


def resolve(request_url: Optional[str], referer: Optional[str], root_folder: str) -> ResolvedRequest:
    """Resolve ``request_url`` against ``root_folder``.

    The url path is percent-decoded and then concatenated verbatim: no
    normalization and no confinement to the root, so ``..`` segments are passed
    through unchanged.
    """
    if not request_url:
        raise InvalidRequest("Request had no URL")

    pathname = unquote(urlsplit(request_url).path)

    if is_module_request(referer):
        return ResolvedRequest(f"{root_folder}{pathname}.js", True)
    # navigating to "host:PORT" serves the homepage
    if pathname == "/":
        return ResolvedRequest(f"{root_folder}/index.html", False)
    return ResolvedRequest(f"{root_folder}{pathname}", False)


def extension_of(path: str) -> str:
    return posixpath.splitext(path)[1].replace(".", "", 1)


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(extension_of(path), DEFAULT_CONTENT_TYPE)


__all__ = [
    "CONTENT_TYPES",
    "DEFAULT_CONTENT_TYPE",
    "ResolvedRequest",
    "is_module_request",
    "resolve",
    "extension_of",
    "content_type_for",
]
