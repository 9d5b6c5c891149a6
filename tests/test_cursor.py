# =============================================================================
# UID Cursor Tests
# =============================================================================

import pytest

from mail_retriever.core.options import ALL, Order, RetrievalOptions, UidInterval, What
from mail_retriever.imap.cursor import (
    batched,
    build_search_keys,
    format_uid_set,
    join_search_keys,
    search_criteria,
    select_uids,
)


@pytest.mark.parametrize("uids, expected", [
    (42, "UID 42"),
    ([1, 2, 3], "UID 1,2,3"),
    ((7, 5), "UID 7,5"),
    ({9, 3, 6}, "UID 3,6,9"),
    (range(10, 13), "UID 10,11,12"),
    ({"from": 5}, "UID 5:*"),
    ({"to": 9}, "UID 1:9"),
    ({"from": 2, "to": 4}, "UID 2:4"),
    (UidInterval(start=100), "UID 100:*"),
    (UidInterval(end=50), "UID 1:50"),
    ("all", "ALL"),
    ("ALL", "ALL"),
    ("4:8", "UID 4:8"),
    (True, ""),
    (3.5, ""),
    ([], ""),
])
def test_build_search_keys(uids, expected):
    assert build_search_keys(uids) == expected


def test_join_search_keys():
    assert join_search_keys(["FROM", "bob", "UNSEEN"]) == "FROM bob UNSEEN"
    assert join_search_keys("  SINCE 1-Jan-2024 ") == "SINCE 1-Jan-2024"
    assert join_search_keys([]) == "ALL"
    assert join_search_keys("") == "ALL"


def test_search_criteria_prefers_uids():
    assert search_criteria(RetrievalOptions.build(keys="UNSEEN")) == "UNSEEN"
    assert search_criteria(RetrievalOptions.build(keys="UNSEEN", uids=[5])) == "UID 5"
    # A specifier that cannot be understood falls back to the keys
    assert search_criteria(RetrievalOptions.build(keys="UNSEEN", uids=3.5)) == "UNSEEN"


class TestSelectUids:
    SEARCHED = [103, 101, 105, 102, 104]

    def test_last_descending(self):
        assert select_uids(self.SEARCHED, What.LAST, 2, Order.DESC) == [105, 104]

    def test_last_ascending(self):
        assert select_uids(self.SEARCHED, What.LAST, 2, Order.ASC) == [104, 105]

    def test_first_descending(self):
        assert select_uids(self.SEARCHED, What.FIRST, 3, Order.DESC) == [103, 102, 101]

    def test_all(self):
        assert select_uids(self.SEARCHED, What.LAST, ALL, Order.ASC) == [101, 102, 103, 104, 105]

    def test_count_larger_than_matches(self):
        assert select_uids([2, 1], What.FIRST, 10, Order.ASC) == [1, 2]

    def test_duplicates_collapse(self):
        assert select_uids([1, 1, 2], What.FIRST, ALL, Order.ASC) == [1, 2]


def test_batched():
    assert list(batched([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(batched([], 3)) == []
    with pytest.raises(ValueError):
        list(batched([1], 0))


def test_format_uid_set():
    assert format_uid_set([5, 1, 9]) == "5,1,9"
