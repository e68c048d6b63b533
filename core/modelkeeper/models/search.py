"""
In-memory search over model records.
Shared by CatalogSource (remote set) and ModelCatalog (merged set), so a
filter never costs a network round-trip.
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from modelkeeper.models.record import (
    ModelCompatibility,
    ModelRecord,
    ModelSearchFilters,
    ModelSortOption,
)

CompatibilityFn = Callable[[ModelRecord], ModelCompatibility]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _declared_compatibility(record: ModelRecord) -> ModelCompatibility:
    return record.compatibility


def _timestamp(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    # Naive timestamps are treated as UTC so they compare with aware ones
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def matches_query(record: ModelRecord, query: str) -> bool:
    """Case-insensitive substring match over the descriptive fields."""
    if not query:
        return True
    q = query.lower()
    return (
        q in record.name.lower()
        or q in record.author.lower()
        or q in record.description.lower()
        or q in record.parameters.lower()
        or any(q in tag.lower() for tag in record.tags)
    )


def apply_filters(
    records: Iterable[ModelRecord],
    filters: ModelSearchFilters,
    compatibility_of: CompatibilityFn = _declared_compatibility,
) -> list[ModelRecord]:
    """Keep the records that satisfy every filter that is set."""
    results = list(records)

    if filters.compatibility is not None:
        results = [r for r in results if compatibility_of(r) == filters.compatibility]

    if filters.min_parameters is not None:
        results = [r for r in results if r.parameter_count >= filters.min_parameters]
    if filters.max_parameters is not None:
        results = [r for r in results if r.parameter_count <= filters.max_parameters]

    if filters.min_size is not None:
        results = [r for r in results if r.size >= filters.min_size]
    if filters.max_size is not None:
        results = [r for r in results if r.size <= filters.max_size]

    if filters.author:
        author = filters.author.lower()
        results = [r for r in results if r.author.lower() == author]

    if filters.tags:
        wanted = [t.lower() for t in filters.tags]
        results = [
            r
            for r in results
            if all(tag in {t.lower() for t in r.tags} for tag in wanted)
        ]

    if filters.license:
        license_q = filters.license.lower()
        results = [
            r for r in results if r.license and license_q in r.license.lower()
        ]

    return results


def apply_sorting(
    records: Iterable[ModelRecord],
    sort_by: ModelSortOption,
    ascending: bool = True,
    compatibility_of: CompatibilityFn = _declared_compatibility,
) -> list[ModelRecord]:
    """
    Sort records. Ties fall back to name then id so results are stable.

    Compatibility sorts best-first when ascending.
    """
    keys: dict[ModelSortOption, Callable[[ModelRecord], object]] = {
        ModelSortOption.NAME: lambda r: r.name.lower(),
        ModelSortOption.AUTHOR: lambda r: r.author.lower(),
        ModelSortOption.SIZE: lambda r: r.size,
        ModelSortOption.PARAMETERS: lambda r: r.parameter_count,
        ModelSortOption.DATE_CREATED: lambda r: _timestamp(r.created_at),
        ModelSortOption.DATE_UPDATED: lambda r: _timestamp(r.updated_at),
        ModelSortOption.COMPATIBILITY: lambda r: -compatibility_of(r).rank,
    }
    key = keys[sort_by]
    ordered = sorted(records, key=lambda r: (key(r), r.name.lower(), r.id))
    return ordered if ascending else list(reversed(ordered))


def filter_records(
    records: Iterable[ModelRecord],
    query: str = "",
    filters: Optional[ModelSearchFilters] = None,
    compatibility_of: CompatibilityFn = _declared_compatibility,
) -> list[ModelRecord]:
    """Text search, then filters, then sorting."""
    filters = filters or ModelSearchFilters()
    matched = [r for r in records if matches_query(r, query)]
    filtered = apply_filters(matched, filters, compatibility_of)
    return apply_sorting(filtered, filters.sort_by, filters.ascending, compatibility_of)
