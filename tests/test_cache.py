"""
Tests for the size-tiered cache.
"""

import json

import pytest

from app.services.cache import FileTier, MemoryTier, TieredCache, TierUnavailableError


class BrokenTier(FileTier):
    """Large tier whose directory can never be written."""

    def available(self) -> bool:
        return False


@pytest.fixture
def cache_clock(clock):
    return clock


@pytest.fixture
def tiered(tmp_path, cache_clock):
    return TieredCache(
        small=MemoryTier(64 * 1024),
        large=FileTier(tmp_path / "large"),
        prefix="shop",
        size_threshold=200,
        default_max_age=60,
        clock=cache_clock,
    )


def payload_of_size(size: int) -> str:
    """A string value whose JSON serialization is exactly ``size`` bytes."""
    return "x" * (size - 2)


class TestRouting:
    """Tests for tier selection by serialized size."""

    def test_small_value_round_trip(self, tiered):
        """Small values are stored in the small tier without metadata."""
        data = [{"shipping_profile_id": 1}]

        assert tiered.save("profiles", data) is True

        assert tiered.load("profiles") == data
        assert tiered.small.get("shop_profiles") is not None
        assert tiered.small.get("shop_profiles_meta") is None
        assert tiered.large.get("shop_profiles") is None

    def test_large_value_goes_to_large_tier_with_metadata(self, tiered):
        """Values above the threshold land in the large tier plus a meta record."""
        data = [{"listing_id": i, "title": "Stoneware mug"} for i in range(20)]

        assert tiered.save("listings", data) is True

        assert tiered.large.get("shop_listings") is not None
        assert tiered.small.get("shop_listings") is None
        meta = json.loads(tiered.small.get("shop_listings_meta"))["data"]
        assert meta["tier"] == "large"
        assert meta["count"] == 20
        assert meta["size"] == len(json.dumps(data).encode("utf-8"))
        assert tiered.load("listings") == data

    def test_value_exactly_at_threshold_stays_small(self, tiered):
        """Only values strictly above the threshold are routed to the large tier."""
        value = payload_of_size(200)
        assert len(json.dumps(value)) == 200

        tiered.save("edge", value)

        assert tiered.small.get("shop_edge") is not None
        assert tiered.large.get("shop_edge") is None
        assert tiered.load("edge") == value

    def test_overwrite_moves_between_tiers(self, tiered):
        """Saving again removes the copy left in the other tier."""
        tiered.save("item", payload_of_size(500))
        tiered.save("item", "tiny")

        assert tiered.large.get("shop_item") is None
        assert tiered.small.get("shop_item_meta") is None
        assert tiered.load("item") == "tiny"


class TestExpiry:
    """Tests for lazy TTL expiry."""

    def test_expired_entry_reads_as_missing_but_stays_stored(self, tiered, cache_clock):
        """Expiry is checked on read; nothing is physically removed."""
        tiered.save("profiles", [1, 2, 3])
        cache_clock.now += 61

        assert tiered.load("profiles") is None
        assert tiered.small.get("shop_profiles") is not None

    def test_explicit_max_age_overrides_default(self, tiered, cache_clock):
        """A caller-provided max_age wins over the default."""
        tiered.save("profiles", [1])
        cache_clock.now += 120

        assert tiered.load("profiles", max_age=3600) == [1]
        assert tiered.load("profiles", max_age=60) is None

    def test_large_entry_expires_by_metadata_timestamp(self, tiered, cache_clock):
        """Large entries expire according to their meta record."""
        tiered.save("big", payload_of_size(1000))
        cache_clock.now += 61

        assert tiered.load("big") is None
        assert tiered.large.get("shop_big") is not None


class TestCorruption:
    """Tests for corrupt entries."""

    def test_corrupt_entry_is_purged(self, tiered):
        """Unparseable records read as missing and are deleted."""
        tiered.small.set("shop_broken", "{not json")

        assert tiered.load("broken") is None
        assert tiered.small.get("shop_broken") is None

    def test_record_without_data_is_purged(self, tiered):
        """Records missing the data field are treated as corrupt."""
        tiered.small.set("shop_partial", json.dumps({"timestamp": 1}))

        assert tiered.load("partial") is None
        assert tiered.small.get("shop_partial") is None

    def test_metadata_pointing_at_missing_entry(self, tiered):
        """Dangling metadata is removed and the read is a miss."""
        tiered.save("big", payload_of_size(1000))
        tiered.large.delete("shop_big")

        assert tiered.load("big") is None
        assert tiered.small.get("shop_big_meta") is None

    def test_undecodable_large_entry_is_purged(self, tiered, tmp_path):
        """Bytes that are not UTF-8 read as a miss and the file is removed."""
        directory = tmp_path / "large"
        directory.mkdir()
        path = directory / "shop_k.json"
        path.write_bytes(b"\xff\xfe garbage")

        assert tiered.status("k").exists is False
        assert tiered.load("k") is None
        assert not path.exists()


class TestDegradation:
    """Tests for tier failures."""

    def test_large_value_falls_back_to_small_tier(self, tmp_path, cache_clock):
        """An unavailable large tier degrades to the small one."""
        cache = TieredCache(
            small=MemoryTier(64 * 1024),
            large=BrokenTier(tmp_path / "nowhere"),
            prefix="shop",
            size_threshold=100,
            clock=cache_clock,
        )
        value = payload_of_size(500)

        assert cache.save("big", value) is True
        assert cache.load("big") == value
        assert cache.status("big").tier == "small"

    def test_small_quota_exceeded_falls_back_to_large(self, tmp_path, cache_clock):
        """A full small tier sends the entry to the large tier."""
        cache = TieredCache(
            small=MemoryTier(max_bytes=50),
            large=FileTier(tmp_path / "large"),
            prefix="shop",
            size_threshold=1000,
            clock=cache_clock,
        )
        value = payload_of_size(120)

        assert cache.save("item", value) is True
        assert cache.large.get("shop_item") is not None
        assert cache.load("item") == value

    def test_no_tier_available(self, tmp_path, cache_clock):
        """When nothing accepts the entry, save reports failure."""
        cache = TieredCache(
            small=MemoryTier(max_bytes=10),
            large=BrokenTier(tmp_path / "nowhere"),
            prefix="shop",
            clock=cache_clock,
        )

        assert cache.save("item", payload_of_size(100)) is False
        assert cache.load("item") is None

    def test_unserializable_value(self, tiered):
        """Values that cannot be serialized are rejected."""
        assert tiered.save("bad", {"when": object()}) is False

    def test_memory_tier_quota(self):
        """The in-process tier enforces its byte quota."""
        tier = MemoryTier(max_bytes=10)
        tier.set("a", "12345")

        with pytest.raises(TierUnavailableError):
            tier.set("b", "1234567")


class TestClearAndStatus:
    """Tests for clear() and status()."""

    def test_clear_single_key_removes_all_traces(self, tiered):
        """Clearing a key removes the entry and its metadata."""
        tiered.save("big", payload_of_size(1000))

        removed = tiered.clear("big")

        assert removed == 2
        assert tiered.load("big") is None
        assert tiered.small.get("shop_big_meta") is None

    def test_clear_all_respects_prefix(self, tmp_path, cache_clock):
        """Clearing everything leaves other namespaces alone."""
        small = MemoryTier()
        large = FileTier(tmp_path / "shared")
        ours = TieredCache(small=small, large=large, prefix="shop", size_threshold=100, clock=cache_clock)
        theirs = TieredCache(small=small, large=large, prefix="other", size_threshold=100, clock=cache_clock)
        ours.save("a", 1)
        ours.save("b", payload_of_size(400))
        theirs.save("a", 2)

        removed = ours.clear()

        assert removed == 3
        assert ours.load("a") is None
        assert ours.load("b") is None
        assert theirs.load("a") == 2

    def test_status_of_small_entry(self, tiered, cache_clock):
        """Status reports tier, count and age without modifying the entry."""
        tiered.save("profiles", [1, 2, 3])
        cache_clock.now += 5

        status = tiered.status("profiles")

        assert status.exists is True
        assert status.tier == "small"
        assert status.count == 3
        assert status.age == pytest.approx(5)

    def test_status_of_large_entry(self, tiered):
        """Large entries are described from their metadata."""
        value = payload_of_size(1000)
        tiered.save("big", value)

        status = tiered.status("big")

        assert status.exists is True
        assert status.tier == "large"
        assert status.size == 1000
        assert status.count == 1

    def test_status_of_missing_entry(self, tiered):
        """Missing keys report exists=False."""
        assert tiered.status("nothing").exists is False
