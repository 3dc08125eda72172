from __future__ import annotations

from collections.abc import Sequence

from syncgate.schemas import SubscriberRecord

ChangeSet = tuple[list[SubscriberRecord], list[SubscriberRecord], list[SubscriberRecord]]


class DuplicateSubscriberError(ValueError):
    pass


def _index_by_id(rows: Sequence[SubscriberRecord], *, side: str) -> dict[int, SubscriberRecord]:
    out: dict[int, SubscriberRecord] = {}
    for row in rows:
        if row.id in out:
            raise DuplicateSubscriberError(f"duplicate subscriber id={row.id} in {side} snapshot")
        out[row.id] = row
    return out


def _differs(old: SubscriberRecord, new: SubscriberRecord) -> bool:
    return (
        old.passwd != new.passwd
        or old.email != new.email
        or old.speed_limit != new.speed_limit
        or old.ip_limit != new.ip_limit
    )


def compare(
    old: Sequence[SubscriberRecord] | None,
    new: Sequence[SubscriberRecord] | None,
) -> ChangeSet:
    """
    Compare two subscriber snapshots by id.

    Returns `(deleted, added, modified)`:
      - deleted: ids only in `old` (old records)
      - added: ids only in `new` (new records)
      - modified: ids in both whose credential, identifier or limits differ (new records)

    Each list is ordered by id.
    """
    if old is None and new is None:
        return [], [], []
    if old is None:
        added = _index_by_id(new or [], side="new")
        return [], [added[key] for key in sorted(added)], []
    if new is None:
        deleted = _index_by_id(old, side="old")
        return [deleted[key] for key in sorted(deleted)], [], []

    old_map = _index_by_id(old, side="old")
    new_map = _index_by_id(new, side="new")

    deleted = [old_map[key] for key in sorted(old_map.keys() - new_map.keys())]
    added = [new_map[key] for key in sorted(new_map.keys() - old_map.keys())]
    modified = [
        new_map[key]
        for key in sorted(old_map.keys() & new_map.keys())
        if _differs(old_map[key], new_map[key])
    ]
    return deleted, added, modified
