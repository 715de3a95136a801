"""Response guard for the endpoints that promise masked output.

The import preview, history, recovery report, member directory and
recent audit feed must never carry a raw phone number, email or secret.
Their JSON bodies are scanned with onboarding.core.logging.PII_PATTERNS;
a hit replaces the response with HTTP 500.  Member detail endpoints are
deliberately unmasked and are not scanned.

Only the index of the matching pattern is logged, never the match.
"""
from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from onboarding.core.logging import PII_PATTERNS
from onboarding.core.settings import get_settings

logger = logging.getLogger(__name__)

GUARDED_PATHS = frozenset({"/imports/upload", "/imports/members", "/audit/recent"})
GUARDED_PREFIXES = ("/imports/history", "/imports/recovery/")

# Invalid once the body is re-buffered.
_DROPPED_HEADERS = frozenset({"content-length", "transfer-encoding"})

BLOCKED_DETAIL = "Internal error: response blocked by PII filter."


def is_guarded(path: str) -> bool:
    path = path.rstrip("/") or "/"
    if path in GUARDED_PATHS:
        return True
    return path.startswith(GUARDED_PREFIXES) and not path.endswith("/reprocess")


def find_pii(text: str) -> int | None:
    """Index of the first pattern in PII_PATTERNS that matches *text*."""
    for index, pattern in enumerate(PII_PATTERNS):
        if pattern.search(text):
            return index
    return None


async def _read_body(response: Response) -> bytes:
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk.encode("utf-8") if isinstance(chunk, str) else chunk)
    return b"".join(chunks)


class PIIFilterMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        if not get_settings().pii_masking_enabled or not is_guarded(request.url.path):
            return response
        if "application/json" not in response.headers.get("content-type", ""):
            return response

        body = await _read_body(response)
        hit = find_pii(body.decode("utf-8", errors="replace"))
        if hit is not None:
            logger.error("Blocked response on %s: pattern %d matched", request.url.path, hit)
            return JSONResponse(status_code=500, content={"detail": BLOCKED_DETAIL})

        headers = {k: v for k, v in response.headers.items() if k.lower() not in _DROPPED_HEADERS}
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )
