"""HTTP front end: POST a source document, get pain.001 XML back."""
from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import make_asgi_app

from common.logging import configure_logging

from .errors import ContentError, SecurityViolation, UnsupportedFormatError
from .security import sanitize_error_message
from .service import INPUT_FORMATS, ConversionService, count_records
from .settings import ConverterSettings

logger = logging.getLogger(__name__)

app = FastAPI(title="payment-converter")

# expose metrics once
app.mount("/metrics", make_asgi_app())


@app.on_event("startup")
async def _configure_logging() -> None:
    configure_logging(service_name="payment_converter")


@app.get("/healthz")
async def healthz():
    return {"ok": True, "input_formats": list(INPUT_FORMATS)}


@app.post("/convert/{input_format}")
async def convert(input_format: str, request: Request):
    # settings are read per request so tests can monkeypatch env
    settings = ConverterSettings.from_env()
    if input_format not in INPUT_FORMATS:
        raise HTTPException(status_code=404, detail=str(UnsupportedFormatError(input_format)))

    body = await request.body()
    if len(body) > settings.max_file_bytes:
        logger.warning("Rejected %d-byte %s body over the size limit", len(body), input_format)
        raise HTTPException(status_code=413, detail="File size exceeds maximum allowed size")
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Request body is not valid UTF-8 text")

    try:
        xml, parsed = ConversionService(settings).convert_text(text, input_format)
    except SecurityViolation as exc:
        raise HTTPException(status_code=422, detail=sanitize_error_message(str(exc)))
    except ContentError as exc:
        raise HTTPException(status_code=400, detail=sanitize_error_message(str(exc)))

    records = count_records(parsed)
    return Response(
        content=xml,
        media_type="application/xml",
        headers={
            "X-Records-Processed": str(records),
            "X-Conversion-Warnings": str(len(parsed.warnings)),
        },
    )
