"""Loader utilities for the synonym and rate YAML tables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Tuple

import yaml

PACKAGE_ROOT = Path(__file__).resolve().parent
DATA_DIR = PACKAGE_ROOT / "data"
SYNONYMS_PATH = DATA_DIR / "column_synonyms.yaml"
RATES_PATH = DATA_DIR / "withholding_rates.yaml"

FIELD_ROLES = {"identity", "date", "net", "withheld", "gross", "rate", "category", "other"}


class SynonymEntry(NamedTuple):
    """One logical field in matching priority order."""

    field: str
    role: str
    synonyms: Tuple[str, ...]


def _load_yaml_file(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def parse_synonym_table(raw: Any) -> List[SynonymEntry]:
    """Validate a raw synonym payload and return it as ordered entries.

    The monetary ordering is enforced here: every net-role field has to come
    before every gross-role field, otherwise net headers would be read as gross.
    """
    if isinstance(raw, dict):
        raw = raw.get("fields") or []
    if not isinstance(raw, list):
        raise ValueError("Synonym table must be a list of field entries")

    entries: List[SynonymEntry] = []
    seen = set()
    for idx, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            raise ValueError(f"Invalid synonym entry at position {idx}: expected mapping")
        field = str(item.get("field") or "").strip()
        role = str(item.get("role") or "other").strip()
        synonyms = item.get("synonyms") or []
        if not field:
            raise ValueError(f"Synonym entry at position {idx} has no field name")
        if field in seen:
            raise ValueError(f"Field declared twice in synonym table: {field}")
        if role not in FIELD_ROLES:
            raise ValueError(f"Unknown role {role!r} for field {field}")
        if not isinstance(synonyms, list) or not synonyms:
            raise ValueError(f"Field {field} needs a non-empty synonym list")
        seen.add(field)
        entries.append(SynonymEntry(field, role, tuple(str(s) for s in synonyms)))

    net_positions = [i for i, e in enumerate(entries) if e.role == "net"]
    gross_positions = [i for i, e in enumerate(entries) if e.role == "gross"]
    if net_positions and gross_positions and max(net_positions) > min(gross_positions):
        raise ValueError("Net-amount fields must precede gross-amount fields in the synonym table")
    return entries


@lru_cache(maxsize=1)
def load_column_synonyms(path: Path | str | None = None) -> Tuple[SynonymEntry, ...]:
    source = Path(path) if path else SYNONYMS_PATH
    if not source.exists():
        raise FileNotFoundError(f"Synonym table not found: {source}")
    return tuple(parse_synonym_table(_load_yaml_file(source)))


@lru_cache(maxsize=1)
def load_withholding_rates(path: Path | str | None = None) -> Dict[int, Dict[str, float]]:
    """Load per-year nominal rates keyed by year, then category code."""
    source = Path(path) if path else RATES_PATH
    if not source.exists():
        raise FileNotFoundError(f"Rate table not found: {source}")
    data = _load_yaml_file(source)
    if not isinstance(data, dict):
        raise ValueError(f"Rate table must be a mapping: {source}")

    rates: Dict[int, Dict[str, float]] = {}
    for year, by_category in data.items():
        try:
            year_int = int(year)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid year in rate table: {year}") from exc
        if not isinstance(by_category, dict):
            raise ValueError(f"Rates for {year} must map category codes to rates")
        rates[year_int] = {str(code).upper(): float(rate) for code, rate in by_category.items()}
    if not rates:
        raise ValueError(f"No rates found in {source}")
    return rates


def reload_caches() -> None:
    """Clear cached loaders (useful for tests)."""
    load_column_synonyms.cache_clear()
    load_withholding_rates.cache_clear()
