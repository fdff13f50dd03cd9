from __future__ import annotations

import os
from urllib.parse import urlunparse
from xml.sax.saxutils import quoteattr

from fastapi import APIRouter, Request
from fastapi.responses import Response

router = APIRouter()

MEDIA_STREAM_PATH = "/twilio/media-stream"


def _media_stream_url(request: Request) -> str:
    override = os.getenv("TWILIO_MEDIA_STREAM_BASE")
    if override:
        base = override.rstrip("/")
        return f"{base}{MEDIA_STREAM_PATH}"
    scheme = "wss"
    host = request.url.hostname or "localhost"
    port = request.url.port
    netloc = f"{host}:{port}" if port else host
    return urlunparse((scheme, netloc, MEDIA_STREAM_PATH, "", "", ""))


@router.post("/voice")
async def twilio_voice(request: Request) -> Response:
    stream_url = _media_stream_url(request)
    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(stream_url)}/>
    </Connect>
</Response>"""
    return Response(content=twiml, media_type="application/xml")
