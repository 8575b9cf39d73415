"""Column header normalization for BigQuery destinations.

Headers coming from spreadsheets and files are free text. BigQuery column
names must be letters, digits and underscores and may not start with a
digit, so every header is cleaned before it becomes a destination column.
The same functions are used when a job is first configured and when the
source is re-read to look for schema drift.
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sheetsync.models.jobs import SchemaMapping

UNNAMED_COLUMN = "unnamed_column"

_SEPARATORS_RE = re.compile(r"[\s\W]+", re.ASCII)
_INVALID_CHARS_RE = re.compile(r"[^a-zA-Z0-9_]")


def clean_column_name(name: str | None) -> str:
    if name is None or not str(name).strip():
        return UNNAMED_COLUMN

    cleaned = _SEPARATORS_RE.sub("_", str(name).strip())
    cleaned = _INVALID_CHARS_RE.sub("", cleaned).lower()
    cleaned = cleaned.strip("_")

    if cleaned[:1].isdigit():
        cleaned = f"col_{cleaned}"

    if not cleaned:
        return UNNAMED_COLUMN
    return cleaned


def generate_schema_mapping(headers: Iterable[str]) -> list[SchemaMapping]:
    """Clean each header and suffix repeats with ``_1``, ``_2``... in first-seen order."""
    seen: dict[str, int] = {}
    used: set[str] = set()
    mapping: list[SchemaMapping] = []
    for original in headers:
        original = "" if original is None else str(original)
        base = clean_column_name(original)
        candidate = base
        if base in used:
            count = seen.get(base, 0)
            while candidate in used:
                count += 1
                candidate = f"{base}_{count}"
            seen[base] = count
        used.add(candidate)
        mapping.append(SchemaMapping(original_name=original, destination_name=candidate))
    return mapping


def find_duplicate_destinations(mapping: Sequence[SchemaMapping]) -> list[str]:
    counts: dict[str, int] = {}
    for item in mapping:
        counts[item.destination_name] = counts.get(item.destination_name, 0) + 1
    return sorted(name for name, count in counts.items() if count > 1)


@dataclass
class SchemaComparison:
    added: list[SchemaMapping] = field(default_factory=list)
    removed: list[SchemaMapping] = field(default_factory=list)
    unchanged: list[SchemaMapping] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def compare_schema(mapping: Sequence[SchemaMapping], headers: Iterable[str]) -> SchemaComparison:
    """Diff a saved mapping against the headers currently present in the source.

    New headers get proposed destination names that do not collide with the
    names already in use by the saved mapping.
    """
    current = [str(h) if h is not None else "" for h in headers]
    # Repeated headers count once per occurrence.
    remaining: dict[str, int] = {}
    for header in current:
        remaining[header] = remaining.get(header, 0) + 1

    comparison = SchemaComparison()
    for item in mapping:
        if remaining.get(item.original_name, 0) > 0:
            remaining[item.original_name] -= 1
            comparison.unchanged.append(item)
        else:
            comparison.removed.append(item)

    new_headers: list[str] = []
    for header in current:
        if remaining.get(header, 0) > 0:
            remaining[header] -= 1
            new_headers.append(header)
    if new_headers:
        used = {item.destination_name for item in mapping}
        for proposed in generate_schema_mapping(new_headers):
            name = proposed.destination_name
            suffix = 0
            while name in used:
                suffix += 1
                name = f"{proposed.destination_name}_{suffix}"
            used.add(name)
            comparison.added.append(SchemaMapping(original_name=proposed.original_name, destination_name=name))
    return comparison
