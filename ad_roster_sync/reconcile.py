"""
Three-way reconciliation between the roster and the directory.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    """
    Partition of unique IDs into new, matched and stale.

    ``new_records`` and ``matched_records`` come from the roster,
    ``stale_records`` from the directory.
    """

    new: FrozenSet[str] = frozenset()
    matched: FrozenSet[str] = frozenset()
    stale: FrozenSet[str] = frozenset()
    new_records: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    matched_records: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    stale_records: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    @property
    def all_ids(self) -> FrozenSet[str]:
        return self.new | self.matched | self.stale


def index_by_id(records: Iterable[Mapping[str, str]], unique_id: str,
                source: str = 'records') -> Dict[str, Mapping[str, str]]:
    """
    Key records by their unique ID value.

    Records without an ID are skipped; a repeated ID keeps the later record.
    """
    index = {}
    for record in records:
        key = record.get(unique_id)
        if not key:
            logger.warning(f"Skipping {source} entry without {unique_id}: {dict(record)}")
            continue
        if key in index:
            logger.warning(f"Duplicate {unique_id} {key!r} in {source}, keeping the later entry")
        index[key] = record
    return index


def reconcile(roster: Iterable[Mapping[str, str]],
              directory: Iterable[Mapping[str, str]],
              unique_id: str) -> ReconciliationResult:
    """
    Split roster and directory records into new, matched and stale sets.

    IDs are compared by exact string equality.

    Args:
        roster: Records read from the roster
        directory: Records projected from directory accounts
        unique_id: Field name used as the join key

    Returns:
        ReconciliationResult whose three ID sets partition the union of both sources
    """
    roster_index = index_by_id(roster, unique_id, 'roster')
    directory_index = index_by_id(directory, unique_id, 'directory')

    roster_ids = frozenset(roster_index)
    directory_ids = frozenset(directory_index)

    new = roster_ids - directory_ids
    stale = directory_ids - roster_ids
    matched = roster_ids & directory_ids

    logger.info(f"Reconciliation: {len(new)} new, {len(matched)} matched, {len(stale)} stale")

    return ReconciliationResult(
        new=new,
        matched=matched,
        stale=stale,
        new_records={key: roster_index[key] for key in new},
        matched_records={key: roster_index[key] for key in matched},
        stale_records={key: directory_index[key] for key in stale},
    )
