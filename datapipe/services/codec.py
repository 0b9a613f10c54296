"""Record codec: raw bytes ⇄ ordered sequences of flat records.

Supported input formats: json (array of objects), jsonl, csv, xlsx.
Supported output formats: json (pretty array), jsonl, csv.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime, time
from typing import Any

from openpyxl import load_workbook

from datapipe.core.errors import DecodeError, EncodeError, UnsupportedFormatError
from datapipe.models.enums import OUTPUT_FORMATS, RecordFormat

Record = dict[str, Any]

CONTENT_TYPES: dict[RecordFormat, str] = {
    RecordFormat.JSON: "application/json",
    RecordFormat.JSONL: "application/x-ndjson",
    RecordFormat.CSV: "text/csv",
    RecordFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def _coerce_format(fmt: RecordFormat | str) -> RecordFormat:
    try:
        return RecordFormat(fmt)
    except ValueError:
        raise UnsupportedFormatError(str(fmt)) from None


def content_type(fmt: RecordFormat | str) -> str:
    """MIME type for a format; unknown formats fall back to octet-stream."""
    try:
        return CONTENT_TYPES[RecordFormat(fmt)]
    except ValueError:
        return "application/octet-stream"


def file_extension(fmt: RecordFormat | str) -> str:
    return _coerce_format(fmt).value


# ── Decode ───────────────────────────────────────────────────────────────────


def decode(data: bytes, fmt: RecordFormat | str) -> list[Record]:
    """Parse *data* into records. Fails fast on the first malformed entry."""
    record_format = _coerce_format(fmt)

    if record_format is RecordFormat.XLSX:
        return _decode_xlsx(data)

    text = _to_text(data)
    if record_format is RecordFormat.JSON:
        return _decode_json(text)
    if record_format is RecordFormat.JSONL:
        return _decode_jsonl(text)
    return _decode_csv(text)


def _to_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise DecodeError("Input is not valid UTF-8", f"byte {exc.start}") from exc


def _decode_json(text: str) -> list[Record]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Invalid JSON: {exc.msg}", f"line {exc.lineno}, column {exc.colno}") from exc

    if not isinstance(parsed, list):
        raise DecodeError("Expected a JSON array of objects")

    for index, item in enumerate(parsed):
        if not isinstance(item, dict):
            raise DecodeError("Array element is not an object", f"element {index}")
    return parsed


def _decode_jsonl(text: str) -> list[Record]:
    records: list[Record] = []
    # Only "\n" ends a record; U+2028 and friends may appear raw inside strings
    for lineno, line in enumerate(text.split("\n"), start=1):
        line = line.removesuffix("\r")
        if not line.strip():
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Invalid JSON: {exc.msg}", f"line {lineno}, column {exc.colno}") from exc
        if not isinstance(parsed, dict):
            raise DecodeError("JSON Lines entry is not an object", f"line {lineno}")
        records.append(parsed)
    return records


def _decode_csv(text: str) -> list[Record]:
    reader = csv.reader(io.StringIO(text, newline=""))
    records: list[Record] = []
    header: list[str] | None = None

    try:
        for row in reader:
            if not row or (header is None and all(cell == "" for cell in row)):
                continue
            if header is None:
                header = row
                continue
            if len(row) != len(header):
                raise DecodeError(
                    f"Expected {len(header)} columns but found {len(row)}",
                    f"line {reader.line_num}",
                )
            records.append(dict(zip(header, row)))
    except csv.Error as exc:
        raise DecodeError(f"Invalid CSV: {exc}", f"line {reader.line_num}") from exc

    return records


def _decode_xlsx(data: bytes) -> list[Record]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:  # openpyxl raises zipfile/KeyError/InvalidFileException
        raise DecodeError(f"Invalid XLSX workbook: {exc}") from exc

    try:
        sheet = workbook.worksheets[0]
        rows = sheet.iter_rows(values_only=True)
        header: list[str] | None = None
        records: list[Record] = []
        for rownum, row in enumerate(rows, start=1):
            if row is None or all(cell is None for cell in row):
                continue
            if header is None:
                header = [str(cell) if cell is not None else f"column_{i + 1}" for i, cell in enumerate(row)]
                continue
            if len(row) > len(header) and any(cell is not None for cell in row[len(header):]):
                raise DecodeError("Row has values outside the header columns", f"row {rownum}")
            records.append({
                name: _xlsx_value(row[i] if i < len(row) else None)
                for i, name in enumerate(header)
            })
        return records
    finally:
        workbook.close()


def _xlsx_value(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


# ── Encode ───────────────────────────────────────────────────────────────────


def encode(records: list[Record], fmt: RecordFormat | str) -> bytes:
    """Serialize *records* in input order."""
    record_format = _coerce_format(fmt)
    if record_format not in OUTPUT_FORMATS:
        raise UnsupportedFormatError(record_format.value)

    try:
        if record_format is RecordFormat.JSON:
            text = json.dumps(records, indent=2, ensure_ascii=False)
        elif record_format is RecordFormat.JSONL:
            text = "\n".join(
                json.dumps(record, separators=(",", ":"), ensure_ascii=False)
                for record in records
            )
        else:
            text = _encode_csv(records)
    except (TypeError, ValueError) as exc:
        raise EncodeError(f"Could not serialize records as {record_format.value}: {exc}") from exc

    return text.encode("utf-8")


def _encode_csv(records: list[Record]) -> str:
    # Header is the union of keys in first-seen order
    fieldnames: dict[str, None] = {}
    for record in records:
        for key in record:
            fieldnames.setdefault(key, None)

    buffer = io.StringIO(newline="")
    writer = csv.DictWriter(buffer, fieldnames=list(fieldnames), restval="", lineterminator="\n")
    writer.writeheader()
    for record in records:
        writer.writerow({key: _csv_cell(value) for key, value in record.items()})
    return buffer.getvalue()


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)
