"""Static file serving for a single-page application, falling back to index.html."""

from __future__ import annotations

import mimetypes
import os
from typing import Any, Callable, Iterable, Mapping

INDEX = "index.html"
_RESERVED = ("/metrics", "/healthz")


def _valid_path(path: str) -> bool:
    if path == ".":
        return True
    return all(part not in ("", ".", "..") for part in path.split("/"))


class SPAFileServer:
    """Serves files under ``root``; unknown paths get the root index.html.

    API paths and the metrics and health endpoints are never served.
    """

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def _existing(self, rel: str) -> str | None:
        if not _valid_path(rel):
            return None
        candidate = os.path.join(self.root, *rel.split("/"))
        if os.path.isfile(candidate):
            return candidate
        if os.path.isdir(candidate):
            index = os.path.join(candidate, INDEX)
            if os.path.isfile(index):
                return index
        return None

    def resolve(self, path: str) -> str | None:
        """Filesystem path to serve for the URL ``path``, or ``None`` for not found."""
        if path.startswith("/api/") or path in _RESERVED:
            return None
        rel = path.lstrip("/") or INDEX
        found = self._existing(rel)
        if found is not None:
            return found
        return self._existing(INDEX)

    def __call__(self, environ: Mapping[str, Any], start_response: Callable) -> Iterable[bytes]:
        target = self.resolve(environ.get("PATH_INFO") or "/")
        if target is None:
            body = b"404 page not found\n"
            start_response(
                "404 Not Found",
                [("Content-Type", "text/plain; charset=utf-8"), ("Content-Length", str(len(body)))],
            )
            return [body]
        with open(target, "rb") as src:
            body = src.read()
        content_type = mimetypes.guess_type(target)[0] or "application/octet-stream"
        start_response(
            "200 OK", [("Content-Type", content_type), ("Content-Length", str(len(body)))]
        )
        if environ.get("REQUEST_METHOD") == "HEAD":
            return [b""]
        return [body]