import logging
from typing import AsyncIterator, Optional

from fastapi import FastAPI, UploadFile, File, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import ConversionError
from .gate import ConcurrencyGate, convert_stream
from .models import ConversionResponse, ErrorResponse, HealthResponse
from .rules import CORS_ALLOWED_ORIGINS, LOG_LEVEL, MAX_UPLOAD_BYTES

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="csvjson",
    description="Streaming conversion of delimited text to JSON",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

gate = ConcurrencyGate()

# everything else maps to 400
STATUS_BY_CODE = {
    "TIMEOUT": 504,
    "PROCESSING_ERROR": 500,
}


def error_response(status_code: int, error: str, code: str, details: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=error, code=code, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def conversion_error_response(exc: ConversionError) -> JSONResponse:
    return error_response(STATUS_BY_CODE.get(exc.code, 400), exc.message, exc.code, exc.details)


def parse_has_header(value: Optional[str]) -> bool:
    """Only the exact string "false" turns the header off; anything else keeps it."""
    return value != "false"


async def _continue_stream(first: bytes, stream: AsyncIterator[bytes], filename: str) -> AsyncIterator[bytes]:
    """
    Yield the prefetched chunk, then the rest of the conversion.

    The 200 status is already on the wire here, so a failure can only be
    logged and re-raised; the client is left with a truncated document.
    """
    try:
        yield first
        async for chunk in stream:
            yield chunk
    except ConversionError as exc:
        logger.error(
            "Conversion of %s failed after output was sent (%s): %s",
            filename, exc.code, exc.message,
        )
        raise
    finally:
        await stream.aclose()


@app.get("/api/health", response_model=HealthResponse)
def health():
    return {"status": "healthy"}


@app.post(
    "/api/convert",
    response_model=ConversionResponse,
    responses={
        400: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def convert_csv(
    file: UploadFile = File(...),
    has_header_field: Optional[str] = Form(None, alias="hasHeader"),
):
    has_header = parse_has_header(has_header_field)
    filename = file.filename or "unknown"
    logger.info("Received CSV upload request: %s", filename)

    raw = await file.read(MAX_UPLOAD_BYTES + 1)

    if len(raw) > MAX_UPLOAD_BYTES:
        logger.warning("File size exceeds limit: %s (max: %d bytes)", filename, MAX_UPLOAD_BYTES)
        return error_response(
            413, f"File exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit", "FILE_TOO_LARGE"
        )
    if not raw:
        logger.warning("Received empty file: %s", filename)
        return error_response(400, "File is empty", "EMPTY_FILE")

    logger.info("Processing CSV file: %s (%d bytes, hasHeader=%s)", filename, len(raw), has_header)
    stream = convert_stream(raw, gate, has_header=has_header)

    # Pull the first batch before committing to a 200 so that header and
    # early row failures still get a proper error response.
    try:
        first = await stream.__anext__()
    except ConversionError as exc:
        logger.error("Conversion of %s failed (%s): %s", filename, exc.code, exc.message)
        return conversion_error_response(exc)

    return StreamingResponse(
        _continue_stream(first, stream, filename),
        media_type="application/json",
        headers={"Cache-Control": "no-cache"},
    )
