# -*- coding: utf-8 -*-
"""
CSV loading for source and reference files.
"""
import csv
import io
import os
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, Optional, TextIO, Union


class FileParseError(ValueError):
    """The file could not be read as a table."""


@dataclass
class ParsedFile:
    name: str
    headers: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)


def _is_empty(row: Dict[str, Optional[str]]) -> bool:
    return all(value is None or not str(value).strip() for value in row.values())


def parse_text(text: str, name: str = 'upload.csv') -> ParsedFile:
    """Parse CSV text (a leading BOM is ignored)."""
    if text.startswith('\ufeff'):
        text = text[1:]
    return _parse_stream(io.StringIO(text), name)


def _parse_stream(stream: TextIO, name: str) -> ParsedFile:
    try:
        reader = csv.DictReader(stream)
        headers = [h.strip() for h in (reader.fieldnames or []) if h is not None]
        if not headers or not any(headers):
            raise FileParseError(f"{name}: no header row found")

        rows = []
        for raw in reader:
            # Cells beyond the header row land under the None key
            raw.pop(None, None)
            row = {(k or '').strip(): (v if v is not None else '') for k, v in raw.items()}
            if _is_empty(row):
                continue
            rows.append(row)
    except csv.Error as e:
        raise FileParseError(f"{name}: {e}") from e

    return ParsedFile(name=name, headers=headers, rows=rows)


def parse_file(source: Union[str, os.PathLike, TextIO, BinaryIO], name: Optional[str] = None) -> ParsedFile:
    """
    Read a CSV file into headers and row dicts.

    Fully empty rows are dropped. Files are decoded as UTF-8, with or without
    a byte order mark.

    Args:
        source: Path or open text stream
        name: Display name used in errors (defaults to the file name)

    Returns:
        ParsedFile

    Raises:
        FileParseError: unreadable file, bad encoding or missing header row
    """
    if hasattr(source, 'read'):
        display = name or getattr(source, 'name', 'upload.csv')
        try:
            content = source.read()
            if isinstance(content, bytes):
                content = content.decode('utf-8-sig')
            return parse_text(content, display)
        except UnicodeDecodeError as e:
            raise FileParseError(f"{display}: file is not valid UTF-8 ({e})") from e

    path = os.fspath(source)
    display = name or os.path.basename(path)
    if not path.lower().endswith(('.csv', '.txt')):
        raise FileParseError(f"{display}: only CSV files are supported")
    try:
        with open(path, 'r', encoding='utf-8-sig', newline='') as f:
            return _parse_stream(f, display)
    except UnicodeDecodeError as e:
        raise FileParseError(f"{display}: file is not valid UTF-8 ({e})") from e
    except OSError as e:
        raise FileParseError(f"{display}: {e}") from e
