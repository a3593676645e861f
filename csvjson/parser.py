"""
Delimited-text parsing.

Responsibilities:
- UTF-8 decoding, BOM stripping and newline normalization
- delimiter detection on the header line
- quote-aware field tokenizing of a single line
- lazy, single-pass row iteration with column count enforcement

Parsing is line based: a quoted field may hold delimiters and doubled quotes,
but a line break inside quotes still ends the line.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional

from charset_normalizer import from_bytes

from .errors import ColumnMismatch, EmptyFile, InvalidEncoding, InvalidFormat
from .rules import CANDIDATE_DELIMITERS, DEFAULT_DELIMITER, QUOTE, SYNTHETIC_COLUMN_PREFIX

logger = logging.getLogger(__name__)


def decode_content(raw: bytes) -> str:
    """
    Decode uploaded bytes to text with LF line endings.

    Rules:
    - Input must be valid UTF-8; a leading BOM is dropped.
    - On failure, charset-normalizer's best guess is attached to the error.
    - CRLF and lone CR both become LF.
    """
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        match = from_bytes(raw).best()
        detected = match.encoding if match is not None else None
        logger.error("Failed to decode content as UTF-8 (best guess: %s)", detected)
        raise InvalidEncoding(detected) from exc

    return text.replace("\r\n", "\n").replace("\r", "\n")


def iter_nonblank_lines(text: str) -> Iterator[str]:
    """Yield lines lazily, skipping the ones that are empty or whitespace only."""
    pos = 0
    end_of_text = len(text)
    while pos < end_of_text:
        end = text.find("\n", pos)
        if end == -1:
            end = end_of_text
        line = text[pos:end]
        pos = end + 1
        if line.strip():
            yield line


def detect_delimiter(line: str) -> str:
    """
    Pick the candidate delimiter seen most often outside quotes.

    Ties go to the candidate encountered first. Falls back to comma when no
    candidate is seen unquoted, unless no candidate appears in the line at all.
    """
    counts: Dict[str, int] = {}
    quoted = False

    for char in line:
        if char == QUOTE:
            quoted = not quoted
        elif not quoted and char in CANDIDATE_DELIMITERS:
            counts[char] = counts.get(char, 0) + 1

    if counts:
        # max() keeps the first maximal key; dicts keep first-seen order
        return max(counts, key=counts.get)

    if not any(candidate in line for candidate in CANDIDATE_DELIMITERS):
        logger.error("Content does not appear to be delimited text - no delimiters found")
        raise InvalidFormat("No delimiters found in content")

    return DEFAULT_DELIMITER


def parse_line(line: str, delimiter: str) -> List[str]:
    """
    Split one line into fields.

    ``a,"b,c",d`` gives ``["a", "b,c", "d"]`` and ``a,"b""c",d`` gives
    ``["a", 'b"c', "d"]``. The result always has one more field than the
    line has unquoted delimiters.
    """
    if QUOTE not in line:
        return line.split(delimiter)

    fields: List[str] = []
    field: List[str] = []
    quoted = False
    i = 0
    length = len(line)

    while i < length:
        char = line[i]
        if char == QUOTE:
            if not quoted:
                quoted = True
            elif i + 1 < length and line[i + 1] == QUOTE:
                field.append(QUOTE)
                i += 1
            else:
                quoted = False
        elif char == delimiter and not quoted:
            fields.append("".join(field))
            field = []
        else:
            field.append(char)
        i += 1

    fields.append("".join(field))
    return fields


class CsvDocument:
    """
    Header, delimiter and a forward-only row sequence for one document.

    Construction reads only the first non-blank line. Rows are parsed on
    demand while iterating, and the document can be iterated once.
    """

    def __init__(self, text: str, has_header: bool = True):
        self._lines = iter_nonblank_lines(text)

        first = next(self._lines, None)
        if first is None:
            logger.error("CSV content is empty")
            raise EmptyFile()

        self.delimiter = detect_delimiter(first)
        logger.debug("Detected CSV delimiter: %r", self.delimiter)

        first_fields = parse_line(first, self.delimiter)
        self.has_header = has_header
        self._pending: Optional[List[str]] = None

        if has_header:
            self.headers = tuple(first_fields)
        else:
            self.headers = tuple(
                f"{SYNTHETIC_COLUMN_PREFIX}{i}" for i in range(1, len(first_fields) + 1)
            )
            self._pending = first_fields

        logger.debug(
            "Parsed CSV headers: %d columns - %s%s",
            len(self.headers),
            ", ".join(self.headers[:5]),
            "..." if len(self.headers) > 5 else "",
        )
        self._consumed = False

    @classmethod
    def from_bytes(cls, raw: bytes, has_header: bool = True) -> "CsvDocument":
        return cls(decode_content(raw), has_header=has_header)

    @property
    def column_count(self) -> int:
        return len(self.headers)

    def __iter__(self) -> Iterator[Dict[str, str]]:
        if self._consumed:
            raise RuntimeError("CsvDocument rows can only be iterated once")
        self._consumed = True
        return self._rows()

    def _rows(self) -> Iterator[Dict[str, str]]:
        headers = self.headers
        expected = len(headers)

        if self._pending is not None:
            yield dict(zip(headers, self._pending))
            self._pending = None

        # row 1 is the first non-blank line
        for row_number, line in enumerate(self._lines, start=2):
            values = parse_line(line, self.delimiter)
            if len(values) != expected:
                logger.error(
                    "Column mismatch at row %d: expected %d, got %d",
                    row_number, expected, len(values),
                )
                raise ColumnMismatch(row_number, expected, len(values))
            yield dict(zip(headers, values))
