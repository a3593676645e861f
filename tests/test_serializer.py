import io
import json

import pytest

from csvjson.errors import ColumnMismatch, ConversionTimeout
from csvjson.gate import Deadline
from csvjson.parser import CsvDocument
from csvjson.serializer import StreamingSerializer, escape_json, write_json


class CountingSink(io.BytesIO):
    def __init__(self):
        super().__init__()
        self.flushes = 0

    def flush(self):
        self.flushes += 1
        super().flush()


def _table(rows: int) -> str:
    return "id,name\n" + "".join(f"{i},n{i}\n" for i in range(rows))


def test_write_json_document_shape():
    sink = io.BytesIO()
    metadata = write_json(CsvDocument("a,b\n1,2\n3,4\n"), sink)

    output = json.loads(sink.getvalue())
    assert output["data"] == [{"a": "1", "b": "2"}, {"a": "3", "b": "4"}]
    assert output["metadata"]["rows_processed"] == 2
    assert output["metadata"]["columns"] == ["a", "b"]
    assert output["metadata"]["has_header"] is True
    assert output["metadata"]["timestamp"].endswith("Z")
    assert metadata.rows_processed == 2


def test_header_only_document():
    sink = io.BytesIO()
    write_json(CsvDocument("a,b\n"), sink)
    output = json.loads(sink.getvalue())
    assert output["data"] == []
    assert output["metadata"]["rows_processed"] == 0


def test_values_stay_strings():
    sink = io.BytesIO()
    write_json(CsvDocument("n,flag,empty\n42,true,\n"), sink)
    assert json.loads(sink.getvalue())["data"] == [{"n": "42", "flag": "true", "empty": ""}]


def test_escape_round_trip():
    value = 'say "hi"\nand\\or\r\t\b\f\x01 done'
    assert json.loads('"' + escape_json(value) + '"') == value


def test_quoted_value_round_trip():
    sink = io.BytesIO()
    write_json(CsvDocument('k,v\n1,"he said ""a\tb\\c"""\n'), sink)
    assert json.loads(sink.getvalue())["data"] == [{"k": "1", "v": 'he said "a\tb\\c"'}]


def test_unicode_headers_and_values():
    sink = io.BytesIO()
    write_json(CsvDocument("名前,city\n太郎,東京\n"), sink)
    assert json.loads(sink.getvalue().decode("utf-8"))["data"] == [{"名前": "太郎", "city": "東京"}]


def test_flushes_once_per_batch():
    sink = CountingSink()
    write_json(CsvDocument(_table(5)), sink, batch_size=2)
    # two full batches plus the closing chunk
    assert sink.flushes == 3
    assert len(json.loads(sink.getvalue())["data"]) == 5


def test_exact_batch_multiple():
    chunks = list(StreamingSerializer(CsvDocument(_table(4)), batch_size=2).chunks())
    assert len(chunks) == 3
    assert chunks[0].startswith(b'{"data":[{')
    assert chunks[-1].startswith(b'],"metadata":')


def test_rows_processed_matches_data():
    serializer = StreamingSerializer(CsvDocument(_table(11)), batch_size=3)
    output = json.loads(b"".join(serializer.chunks()))
    assert serializer.rows_processed == len(output["data"]) == output["metadata"]["rows_processed"] == 11


def test_elapsed_time_uses_clock():
    serializer = StreamingSerializer(CsvDocument("a,b\n1,2\n"), clock=lambda: 2.5, started=1.0)
    output = json.loads(b"".join(serializer.chunks()))
    assert output["metadata"]["processing_time_ms"] == 1500


def test_failure_keeps_flushed_output():
    sink = io.BytesIO()
    with pytest.raises(ColumnMismatch) as exc_info:
        write_json(CsvDocument("a,b\n1,2\n3,4\n5\n"), sink, batch_size=1)

    assert exc_info.value.row == 4
    assert sink.getvalue() == b'{"data":[{"a":"1","b":"2"},{"a":"3","b":"4"}'


def test_expired_deadline_stops_rows():
    serializer = StreamingSerializer(CsvDocument(_table(3)), deadline=Deadline(0))
    with pytest.raises(ConversionTimeout):
        list(serializer.chunks())
    assert serializer.rows_processed == 0


def test_rejects_bad_batch_size():
    with pytest.raises(ValueError):
        StreamingSerializer(CsvDocument("a,b\n"), batch_size=0)
