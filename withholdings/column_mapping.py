"""Resolve logical receipt fields to physical spreadsheet columns."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Set

from withholdings.loader import SynonymEntry, load_column_synonyms
from withholdings.normalizers import normalize_text

MIN_PARTIAL_SYNONYM_LENGTH = 4


def map_column_indices(
    headers: Sequence[object],
    synonyms: Optional[Iterable[SynonymEntry]] = None,
) -> Dict[str, int]:
    """Map logical field -> column index using an exact pass, then a substring pass.

    Fields are visited in table order in both passes, so net-amount fields get
    first pick over gross-amount fields. A column is claimed at most once, even
    when two columns carry the same header text.
    """
    entries: List[SynonymEntry] = list(synonyms if synonyms is not None else load_column_synonyms())
    normalized = [normalize_text(h) for h in headers]
    claimed: Set[int] = set()
    mapping: Dict[str, int] = {}

    for entry in entries:
        wanted = {normalize_text(s) for s in entry.synonyms}
        for idx, header in enumerate(normalized):
            if idx not in claimed and header and header in wanted:
                claimed.add(idx)
                mapping[entry.field] = idx
                break

    for entry in entries:
        if entry.field in mapping:
            continue
        partials = [
            normalize_text(s) for s in entry.synonyms if len(s.strip()) >= MIN_PARTIAL_SYNONYM_LENGTH
        ]
        match = next(
            (
                idx
                for idx, header in enumerate(normalized)
                if idx not in claimed and header and any(p in header for p in partials)
            ),
            None,
        )
        if match is not None:
            claimed.add(match)
            mapping[entry.field] = match

    return mapping


def map_columns(
    headers: Sequence[object],
    synonyms: Optional[Iterable[SynonymEntry]] = None,
) -> Dict[str, str]:
    """Same as ``map_column_indices`` but reports the header text of each column."""
    return {field: str(headers[idx]).strip() for field, idx in map_column_indices(headers, synonyms).items()}
