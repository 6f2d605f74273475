import pytest

from takeoff.identifiers import AllocationExhausted, IdentifierAllocator, location_number, max_location


def test_location_number_handles_copies():
    assert location_number("L7") == 7
    assert location_number("L1-L10") == 10
    assert location_number("X7") is None
    assert max_location(["L1", "L3", "L2-L9", "misc"]) == 9


def test_next_after_existing_family():
    allocator = IdentifierAllocator()
    existing = [f"L{n}" for n in range(1, 7)]
    assert allocator.allocate(existing) == "L7"


def test_repeat_allocation_without_create_does_not_collide():
    allocator = IdentifierAllocator()
    existing = ["L1", "L2"]
    first = allocator.allocate(existing)
    second = allocator.allocate(existing)
    assert first == "L3"
    assert second == "L4"
    assert {first, second}.isdisjoint(existing)


def test_probe_skips_ids_the_store_reports_as_taken():
    live = {"L3", "L4"}
    allocator = IdentifierAllocator(exists=lambda rid: rid in live)
    assert allocator.allocate(["L1", "L2"]) == "L5"


def test_reservation_dropped_once_visible():
    allocator = IdentifierAllocator()
    assert allocator.allocate(["L1"]) == "L2"
    assert allocator.allocate(["L1", "L2"]) == "L3"
    allocator.release("L3")
    # L2 was seen in the store, so a stale snapshot without it offers L2 again
    assert allocator.allocate(["L1"]) == "L2"


def test_release_frees_an_unused_reservation():
    allocator = IdentifierAllocator()
    rid = allocator.allocate([])
    allocator.release(rid)
    assert allocator.allocate([]) == rid


def test_exhaustion_after_bounded_probes():
    probes = []

    def always_taken(rid):
        probes.append(rid)
        return True

    allocator = IdentifierAllocator(max_attempts=5, exists=always_taken)
    with pytest.raises(AllocationExhausted, match="after 5 attempts"):
        allocator.allocate(["L1"])
    assert probes == ["L2", "L3", "L4", "L5", "L6"]

    with pytest.raises(AllocationExhausted):
        allocator.allocate(["L1"])
    assert probes[5] == "L2"


def test_copy_identifier_uses_next_location():
    allocator = IdentifierAllocator()
    assert allocator.allocate_copy("L1", ["L1", "L2", "L1-L9"]) == "L1-L10"
