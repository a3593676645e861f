"""
Streaming JSON output for a parsed document.

Output shape: {"data":[{...},...],"metadata":{...}}

Rows are rendered by hand so the whole document never sits in memory; every
value stays a JSON string. Output is produced in chunks of ``batch_size``
rows, one chunk per flush. A failure while pulling a row aborts the stream;
chunks already handed out are not taken back.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, BinaryIO, Callable, Dict, Iterator, Optional

from .models import ConversionMetadata
from .parser import CsvDocument
from .rules import BATCH_SIZE

if TYPE_CHECKING:
    from .gate import Deadline

logger = logging.getLogger(__name__)


def _build_escape_table() -> Dict[int, str]:
    table = {
        ord("\\"): "\\\\",
        ord('"'): '\\"',
        ord("\n"): "\\n",
        ord("\r"): "\\r",
        ord("\t"): "\\t",
        ord("\b"): "\\b",
        ord("\f"): "\\f",
    }
    # remaining C0 controls are not legal raw inside JSON strings
    for code in range(0x20):
        table.setdefault(code, f"\\u{code:04x}")
    return table


_ESCAPE_TABLE = _build_escape_table()


def escape_json(value: str) -> str:
    return value.translate(_ESCAPE_TABLE)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StreamingSerializer:
    """
    Turns a CsvDocument into JSON byte chunks.

    ``rows_processed`` grows as rows are rendered and ``metadata`` is set once
    the closing chunk has been produced. ``started`` is the clock reading at
    conversion entry; it defaults to construction time.
    """

    def __init__(
        self,
        document: CsvDocument,
        batch_size: int = BATCH_SIZE,
        deadline: Optional["Deadline"] = None,
        clock: Callable[[], float] = time.monotonic,
        started: Optional[float] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.document = document
        self.batch_size = batch_size
        self.deadline = deadline
        self._clock = clock
        self.started = clock() if started is None else started
        self.rows_processed = 0
        self.metadata: Optional[ConversionMetadata] = None
        self._keys = {name: escape_json(name) for name in document.headers}

    def elapsed_ms(self) -> int:
        return int((self._clock() - self.started) * 1000)

    def render_row(self, row: Dict[str, str]) -> str:
        keys = self._keys
        return "{" + ",".join(
            f'"{keys[name]}":"{escape_json(value)}"' for name, value in row.items()
        ) + "}"

    def chunks(self) -> Iterator[bytes]:
        parts = ['{"data":[']
        batches = 0

        for row in self.document:
            if self.deadline is not None:
                self.deadline.check()
            if self.rows_processed:
                parts.append(",")
            parts.append(self.render_row(row))
            self.rows_processed += 1

            if self.rows_processed % self.batch_size == 0:
                yield "".join(parts).encode("utf-8")
                parts = []
                batches += 1
                if batches % 10 == 0:
                    logger.debug("Processed %d rows so far...", self.rows_processed)

        self.metadata = ConversionMetadata(
            rows_processed=self.rows_processed,
            processing_time_ms=self.elapsed_ms(),
            columns=list(self.document.headers),
            timestamp=utc_timestamp(),
            has_header=self.document.has_header,
        )
        parts.append('],"metadata":')
        parts.append(self.metadata.model_dump_json())
        parts.append("}")
        yield "".join(parts).encode("utf-8")

    def write_to(self, sink: BinaryIO) -> ConversionMetadata:
        for chunk in self.chunks():
            sink.write(chunk)
            sink.flush()
        return self.metadata


def write_json(document: CsvDocument, sink: BinaryIO, **options) -> ConversionMetadata:
    """Stream ``document`` into a binary sink, flushing once per batch."""
    return StreamingSerializer(document, **options).write_to(sink)
