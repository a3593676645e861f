"""
Deterministic conversion rules.

Limits and candidate sets live here so the parser, serializer and gate agree.
Each limit can be overridden through the environment at import time.
"""

import os

CANDIDATE_DELIMITERS = (",", ";", "\t", "|")  # ties go to whichever appears first in the line
DEFAULT_DELIMITER = ","
QUOTE = '"'

BATCH_SIZE = int(os.getenv("CSVJSON_BATCH_SIZE", "5000"))
MAX_CONCURRENT_CONVERSIONS = int(os.getenv("CSVJSON_MAX_CONCURRENT", "50"))
CONVERSION_TIMEOUT_SECONDS = float(os.getenv("CSVJSON_TIMEOUT_SECONDS", "30"))

# Enforced by the HTTP host only; the core never rejects on size.
MAX_UPLOAD_BYTES = int(os.getenv("CSVJSON_MAX_UPLOAD_BYTES", str(100 * 1024 * 1024)))

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173"
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CSVJSON_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
    if origin.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

SYNTHETIC_COLUMN_PREFIX = "column_"
