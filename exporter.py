# -*- coding: utf-8 -*-
"""
CSV export of match results.
"""
import csv
import os
from collections import Counter
from typing import Dict, List, Sequence, TextIO, Union

from models import MatchResult, MatchStatus
from settings import ColumnConfig


def _percent(value) -> str:
    return '' if value is None else f"{value * 100:.0f}%"


def export_headers(source_columns: ColumnConfig, reference_columns: ColumnConfig,
                   extra_columns: Sequence[str] = ()) -> List[str]:
    extras = [c for c in extra_columns if c not in (source_columns.make, source_columns.model)]
    return [
        f"Source {source_columns.make}",
        f"Source {source_columns.model}",
        *extras,
        'Matched Make',
        'Matched Model',
        *[f"Matched {code}" for code in reference_columns.codes],
        'Match Status',
        'Match Confidence (%)',
        'Actual Fuzzy Score (%)',
        'Reason',
        'Candidate Models',
        'Sources',
    ]


def export_rows(results: Sequence[MatchResult], source_columns: ColumnConfig,
                reference_columns: ColumnConfig, extra_columns: Sequence[str] = ()) -> List[List[str]]:
    extras = [c for c in extra_columns if c not in (source_columns.make, source_columns.model)]
    rows = []
    for result in results:
        data = result.record.data
        rows.append([
            result.record.make,
            result.record.model,
            *['' if data.get(c) is None else str(data.get(c)) for c in extras],
            result.matched_make or '',
            result.matched_model or '',
            *[result.matched_codes.get(code, '') for code in reference_columns.codes],
            result.status.value,
            _percent(result.confidence),
            _percent(result.actual_fuzzy_similarity) or '-',
            result.reason,
            ', '.join(result.all_candidate_models),
            ' '.join(source.uri for source in result.external_sources),
        ])
    return rows


def export_csv(
    results: Sequence[MatchResult],
    destination: Union[str, os.PathLike, TextIO],
    source_columns: ColumnConfig,
    reference_columns: ColumnConfig,
    extra_columns: Sequence[str] = (),
) -> int:
    """
    Write results as CSV (UTF-8 with BOM when writing a file, for spreadsheets).

    Returns:
        Number of data rows written
    """
    headers = export_headers(source_columns, reference_columns, extra_columns)
    rows = export_rows(results, source_columns, reference_columns, extra_columns)

    if hasattr(destination, 'write'):
        writer = csv.writer(destination)
        writer.writerow(headers)
        writer.writerows(rows)
    else:
        with open(destination, 'w', encoding='utf-8-sig', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(headers)
            writer.writerows(rows)
    return len(rows)


def summarize(results: Sequence[MatchResult]) -> Dict[str, int]:
    """Count of results per status label, in cascade order, zero counts omitted."""
    counts = Counter(result.status for result in results)
    return {status.value: counts[status] for status in MatchStatus if counts[status]}
