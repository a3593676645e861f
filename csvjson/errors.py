"""
Conversion failures.

Every failure carries a machine-readable ``code`` so the HTTP host can map it
to a status without inspecting messages.
"""

from __future__ import annotations

from typing import Optional


class ConversionError(Exception):
    code = "PROCESSING_ERROR"
    details: Optional[str] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidEncoding(ConversionError):
    code = "INVALID_ENCODING"
    details = "File must be UTF-8 encoded"

    def __init__(self, detected_encoding: Optional[str] = None):
        super().__init__("File encoding is not UTF-8")
        self.detected_encoding = detected_encoding
        if detected_encoding:
            self.details = f"File must be UTF-8 encoded (looks like {detected_encoding})"


class EmptyFile(ConversionError):
    code = "EMPTY_CSV"
    details = "The CSV file contains no data"

    def __init__(self):
        super().__init__("CSV file is empty")


class InvalidFormat(ConversionError):
    code = "INVALID_CSV_FORMAT"
    details = "Check that your file has proper delimiters and structure"

    def __init__(self, reason: str):
        super().__init__(f"Invalid CSV format: {reason}")
        self.reason = reason


class ColumnMismatch(ConversionError):
    code = "COLUMN_MISMATCH"
    details = "All rows must have the same number of columns"

    def __init__(self, row: int, expected: int, actual: int):
        super().__init__(f"Row {row} has {actual} columns but expected {expected}")
        self.row = row
        self.expected = expected
        self.actual = actual


class ConversionTimeout(ConversionError):
    code = "TIMEOUT"
    details = "Conversion exceeded its time limit; try a smaller file"

    def __init__(self, seconds: float):
        super().__init__(f"Conversion timed out after {seconds:g}s")
        self.seconds = seconds


class ProcessingError(ConversionError):
    """Unclassified failure; ``__cause__`` holds the original exception."""

    code = "PROCESSING_ERROR"

    def __init__(self, message: str):
        super().__init__(f"Processing failed: {message}")
