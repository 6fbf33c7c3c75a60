from trustguard.trustlist import ListItem, TrustList


def _indexes(lst):
    return [item.index for item in lst]


def test_append_keeps_order():
    lst = TrustList()
    lst.append("/a", "1")
    lst.append("/b", "2")
    assert _indexes(lst) == ["/a", "/b"]
    assert len(lst) == 2


def test_prepend_puts_first():
    lst = TrustList()
    lst.append("/a", "1")
    lst.prepend("/b", "2")
    assert list(lst) == [ListItem("/b", "2"), ListItem("/a", "1")]


def test_contains():
    lst = TrustList()
    lst.append("/usr/bin/ls", "data")
    assert lst.contains("/usr/bin/ls")
    assert not lst.contains("/usr/bin/cat")
    assert "/usr/bin/ls" in lst


def test_remove_first_match_only():
    lst = TrustList()
    lst.append("/a", "1")
    lst.append("/b", "2")
    lst.append("/a", "3")
    assert lst.remove("/a") is True
    assert list(lst) == [ListItem("/b", "2"), ListItem("/a", "3")]
    assert len(lst) == 2


def test_remove_missing_returns_false():
    lst = TrustList()
    lst.append("/a", "1")
    assert lst.remove("/zzz") is False
    assert len(lst) == 1


def test_merge_moves_all_items():
    dest = TrustList()
    dest.append("/a", "1")
    src = TrustList()
    src.append("/b", "2")
    src.append("/c", "3")
    dest.merge(src)
    assert _indexes(dest) == ["/a", "/b", "/c"]
    assert len(src) == 0


def test_merge_into_empty():
    dest = TrustList()
    src = TrustList()
    src.append("/x", "1")
    dest.merge(src)
    assert _indexes(dest) == ["/x"]
    assert list(src) == []


def test_clear_empties():
    lst = TrustList()
    lst.append("/a", "1")
    lst.prepend("/b", "2")
    lst.clear()
    assert len(lst) == 0
    assert list(lst) == []