import pytest

from sdnkit.netid import (
    MAX_VNID,
    MIN_VNID,
    AlreadyAllocatedError,
    NetIDAllocator,
    NetIDRange,
    NotInRangeError,
    RangeFullError,
)


@pytest.mark.parametrize(
    "min_id, max_id, expected, included, excluded",
    [
        (101, 200, "101-200", 150, 201),
        (201, 300, "201-300", 201, 301),
        (201, 300, "201-300", 300, 301),
        (10, 10, "10-10", 10, 11),
    ],
)
def test_valid_ranges(min_id, max_id, expected, included, excluded):
    r = NetIDRange.from_bounds(min_id, max_id)
    assert str(r) == expected
    assert r.contains(included)
    assert not r.contains(excluded)


@pytest.mark.parametrize(
    "min_id, max_id",
    [
        (100, 99),
        (1, 100),
        (1, 1 << 25),
        (MIN_VNID, MAX_VNID + 1),
    ],
)
def test_invalid_ranges(min_id, max_id):
    with pytest.raises(ValueError):
        NetIDRange.from_bounds(min_id, max_id)


def test_full_vnid_range_is_valid():
    r = NetIDRange.from_bounds(MIN_VNID, MAX_VNID)
    assert r.size == MAX_VNID - MIN_VNID + 1
    assert MAX_VNID in r
    assert MIN_VNID - 1 not in r


def test_allocate():
    nr = NetIDRange.from_bounds(201, 300)
    r = NetIDAllocator(nr)
    assert r.free() == 100

    found = set()
    count = 0
    while r.free() > 0:
        netid = r.allocate_next()
        count += 1
        assert nr.contains(netid)
        assert netid not in found
        found.add(netid)
    assert count == 100
    with pytest.raises(RangeFullError):
        r.allocate_next()

    released = 210
    r.release(released)
    assert r.free() == 1
    assert r.allocate_next() == released

    r.release(released)
    with pytest.raises(NotInRangeError):
        r.allocate(1)
    with pytest.raises(AlreadyAllocatedError):
        r.allocate(201)
    with pytest.raises(NotInRangeError):
        r.allocate(301)
    with pytest.raises(NotInRangeError):
        r.allocate(500)
    assert r.free() == 1
    r.allocate(released)
    assert r.free() == 0


def test_has_and_release_out_of_range():
    r = NetIDAllocator(NetIDRange.from_bounds(20, 29))
    r.allocate(25)
    assert r.has(25)
    assert not r.has(26)
    assert not r.has(5)
    r.release(5)
    r.release(26)
    assert r.free() == 9
    r.release(25)
    assert not r.has(25)
    assert r.free() == 10