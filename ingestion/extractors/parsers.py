"""
Blocking, streaming parsers shared by the file, FTP and API extractors.

Each parser accepts a filesystem path or a binary file object and yields one
dict per record. They run inside worker threads (see iterate_in_thread).
"""

from typing import Any, BinaryIO, Dict, Iterator, Optional, Union
from pathlib import Path
import json
import xml.etree.ElementTree as ET

import pandas as pd

Source = Union[str, Path, BinaryIO]

# Keys under which JSON documents commonly wrap their record list
ENVELOPE_KEYS = ("data", "results", "items", "records")


def _open_binary(source: Source):
    if isinstance(source, (str, Path)):
        return open(source, "rb"), True
    return source, False


def iter_csv_rows(
    source: Source,
    chunksize: int = 500,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> Iterator[Dict[str, Any]]:
    """CSV rows as strings (no type inference), read in pandas chunks."""
    with pd.read_csv(
        source,
        chunksize=chunksize,
        dtype=str,
        keep_default_na=False,
        sep=delimiter,
        encoding=encoding,
        skipinitialspace=True,
    ) as reader:
        for chunk in reader:
            chunk.columns = chunk.columns.str.strip().str.lower().str.replace(" ", "_")
            for row in chunk.to_dict(orient="records"):
                yield row


def iter_json_rows(source: Source, encoding: str = "utf-8") -> Iterator[Dict[str, Any]]:
    """
    Records of a JSON document: a list, an envelope object or a single object.

    The whole document is loaded before the first record is yielded, so memory
    grows with the file; iter_jsonl_rows is the streaming alternative.
    """
    handle, owned = _open_binary(source)
    try:
        document = json.loads(handle.read().decode(encoding))
    finally:
        if owned:
            handle.close()
    yield from records_from_document(document)


def records_from_document(document: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(document, dict):
        for key in ENVELOPE_KEYS:
            if isinstance(document.get(key), list):
                document = document[key]
                break
        else:
            document = [document]

    if not isinstance(document, list):
        raise ValueError(f"JSON document is a {type(document).__name__}, expected an array or object")

    for index, item in enumerate(document):
        if not isinstance(item, dict):
            raise ValueError(f"JSON record #{index} is a {type(item).__name__}, expected an object")
        yield item


def iter_jsonl_rows(source: Source, encoding: str = "utf-8") -> Iterator[Dict[str, Any]]:
    """JSON Lines, one object per non-blank line."""
    handle, owned = _open_binary(source)
    try:
        for line_number, line in enumerate(handle, start=1):
            text = line.decode(encoding).strip() if isinstance(line, bytes) else line.strip()
            if not text:
                continue
            try:
                item = json.loads(text)
            except ValueError as e:
                raise ValueError(f"line {line_number}: {e}") from e
            if not isinstance(item, dict):
                raise ValueError(f"line {line_number}: expected an object")
            yield item
    finally:
        if owned:
            handle.close()


def _element_to_row(element: ET.Element) -> Dict[str, Any]:
    row: Dict[str, Any] = dict(element.attrib)
    for child in element:
        if len(child):
            continue  # nested structures are not flattened
        text = (child.text or "").strip()
        row[child.tag] = text if text else child.attrib.get("value", "")
    text = (element.text or "").strip()
    if text and not row:
        row["value"] = text
    return row


def iter_xml_rows(source: Source, record_tag: Optional[str] = None) -> Iterator[Dict[str, Any]]:
    """
    Records of an XML document via iterparse.

    `record_tag` names the record element; without it every direct child of
    the root element is a record. Attributes and leaf children become fields.
    """
    handle, owned = _open_binary(source)
    try:
        depth = 0
        for event, element in ET.iterparse(handle, events=("start", "end")):
            if event == "start":
                depth += 1
                continue

            depth -= 1
            is_record = element.tag == record_tag if record_tag else depth == 1
            if is_record:
                yield _element_to_row(element)
                element.clear()
    finally:
        if owned:
            handle.close()


def iter_rows_for_format(fmt: str, source: Source, **options) -> Iterator[Dict[str, Any]]:
    """Dispatch on the source `format` column."""
    fmt = (fmt or "json").lower()
    if fmt == "csv":
        return iter_csv_rows(
            source,
            chunksize=options.get("chunksize", 500),
            delimiter=options.get("delimiter", ","),
            encoding=options.get("encoding", "utf-8"),
        )
    if fmt == "jsonl":
        return iter_jsonl_rows(source, encoding=options.get("encoding", "utf-8"))
    if fmt == "xml":
        return iter_xml_rows(source, record_tag=options.get("record_tag"))
    if fmt == "json":
        return iter_json_rows(source, encoding=options.get("encoding", "utf-8"))
    raise ValueError(f"Unsupported format: {fmt}")
