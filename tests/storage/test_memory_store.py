"""
Test cases for the in-memory target store.
"""

import pytest

from storage.base import InMemoryTargetStore, TargetStore


class TestInMemoryTargetStore:
    """Test cases for InMemoryTargetStore."""

    @pytest.mark.asyncio
    async def test_returned_targets_are_copies(self, sample_target):
        store = InMemoryTargetStore([sample_target])
        loaded = (await store.load_targets())[0]
        loaded.last_fingerprint = "changed"

        stored = await store.get_target(sample_target.id)
        assert stored.last_fingerprint is None

    @pytest.mark.asyncio
    async def test_save_state_only_touches_state_fields(self, sample_target):
        store = InMemoryTargetStore([sample_target])
        updated = sample_target.model_copy(update={
            "last_fingerprint": "fp-a",
            "total_checks": 3,
            "name": "renamed",
        })
        await store.save_target_state(updated)

        stored = await store.get_target(sample_target.id)
        assert stored.last_fingerprint == "fp-a"
        assert stored.total_checks == 3
        assert stored.name == "Tokyo rentals"
        assert store.save_calls == 1

    @pytest.mark.asyncio
    async def test_save_state_of_unknown_target_inserts(self, memory_store, sample_target):
        await memory_store.save_target_state(sample_target)
        assert await memory_store.get_target(sample_target.id) is not None

    @pytest.mark.asyncio
    async def test_owner_index(self, memory_store, make_targets):
        first, second, third = make_targets(3)
        first.owner_id = second.owner_id = "user-1"
        third.owner_id = "user-2"
        for target in (first, second, third):
            await memory_store.upsert_target(target)

        owned = await memory_store.targets_for_owner("user-1")
        assert [target.id for target in owned] == [first.id, second.id]
        assert await memory_store.targets_for_owner("nobody") == []

    @pytest.mark.asyncio
    async def test_upsert_moves_owner(self, memory_store, sample_target):
        await memory_store.upsert_target(sample_target)
        await memory_store.upsert_target(sample_target.model_copy(update={"owner_id": "user-2"}))

        assert await memory_store.targets_for_owner("user-1") == []
        assert len(await memory_store.targets_for_owner("user-2")) == 1

    @pytest.mark.asyncio
    async def test_base_store_is_abstract(self, sample_target):
        store = TargetStore()
        await store.connect()
        with pytest.raises(NotImplementedError):
            await store.load_targets()
        with pytest.raises(NotImplementedError):
            await store.save_target_state(sample_target)
