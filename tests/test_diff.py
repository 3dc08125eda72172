import pytest

from syncgate.agent.diff import DuplicateSubscriberError, compare
from syncgate.schemas import SubscriberRecord


def _sub(sid: int, *, email: str | None = None, passwd: str | None = None, speed: int = 0, ips: int = 0) -> SubscriberRecord:
    return SubscriberRecord(
        id=sid,
        email=email or f"u{sid}@example.com",
        passwd=passwd or f"secret-{sid}",
        speed_limit=speed,
        ip_limit=ips,
    )


def test_compare_none_old_returns_everything_as_added() -> None:
    deleted, added, modified = compare(None, [_sub(3), _sub(1)])
    assert deleted == []
    assert [row.id for row in added] == [1, 3]
    assert modified == []


def test_compare_none_new_returns_everything_as_deleted() -> None:
    deleted, added, modified = compare([_sub(2), _sub(1)], None)
    assert [row.id for row in deleted] == [1, 2]
    assert added == []
    assert modified == []


def test_compare_both_none_is_empty() -> None:
    assert compare(None, None) == ([], [], [])


def test_compare_identical_snapshots_have_no_changes() -> None:
    rows = [_sub(1), _sub(2)]
    assert compare(rows, list(reversed(rows))) == ([], [], [])


def test_compare_partitions_by_id() -> None:
    old = [_sub(1), _sub(2), _sub(4)]
    new = [_sub(2), _sub(3), _sub(4, speed=125_000)]

    deleted, added, modified = compare(old, new)

    assert [row.id for row in deleted] == [1]
    assert [row.id for row in added] == [3]
    assert [row.id for row in modified] == [4]
    # modified carries the new record
    assert modified[0].speed_limit == 125_000


@pytest.mark.parametrize(
    "changed",
    [
        {"passwd": "rotated"},
        {"email": "renamed@example.com"},
        {"speed": 1},
        {"ips": 3},
    ],
)
def test_compare_detects_each_field_change(changed: dict) -> None:
    _, _, modified = compare([_sub(7)], [_sub(7, **changed)])
    assert [row.id for row in modified] == [7]


def test_compare_rejects_duplicate_ids() -> None:
    with pytest.raises(DuplicateSubscriberError):
        compare([_sub(1)], [_sub(1), _sub(1, passwd="other")])
    with pytest.raises(DuplicateSubscriberError):
        compare([_sub(5), _sub(5)], [])


def test_compare_lists_are_disjoint_and_cover_union() -> None:
    old = [_sub(i) for i in (1, 2, 3, 5, 8)]
    new = [_sub(i) for i in (2, 3, 4, 8)] + [_sub(5, passwd="changed")]

    deleted, added, modified = compare(old, new)

    deleted_ids = {row.id for row in deleted}
    added_ids = {row.id for row in added}
    modified_ids = {row.id for row in modified}
    assert deleted_ids.isdisjoint(added_ids)
    assert deleted_ids.isdisjoint(modified_ids)
    assert added_ids.isdisjoint(modified_ids)
    assert deleted_ids | added_ids | modified_ids <= {1, 2, 3, 4, 5, 8}
    assert deleted_ids == {1}
    assert added_ids == {4}
    assert modified_ids == {5}
