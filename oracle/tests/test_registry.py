"""
GreenKarma Oracle: ChainRegistry unit tests

Coverage:
  - create / get / duplicate create
  - add_reading / summarize / verify_integrity delegation and not-found errors
  - isolation between registries and between vehicles
  - snapshot / restore hand-off
"""

import asyncio

import pytest

from conftest import GOOD_PROOF
from ledger.dedup_oracle import InMemoryDedupOracle
from ledger.errors import ChainNotFoundError, DuplicateChainError, LedgerError
from ledger.registry import ChainRegistry, ReadingSubmission


def _reading(km, image, device="dev-A"):
    return ReadingSubmission(
        odometer_km=km,
        image_fingerprint=image,
        device_fingerprint=device,
        location='{"accuracy": 12}',
        proof=GOOD_PROOF,
    )


class TestChainLifecycle:

    @pytest.mark.asyncio
    async def test_create_and_get(self, registry):
        chain = await registry.create_chain("V1")
        assert registry.get_chain("V1") is chain
        assert "V1" in registry
        assert len(registry) == 1
        assert chain.is_active
        assert chain.blocks == []

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, registry):
        assert registry.get_chain("NOPE") is None

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self, registry):
        original = await registry.create_chain("V1")
        with pytest.raises(DuplicateChainError):
            await registry.create_chain("V1")
        assert registry.get_chain("V1") is original

    @pytest.mark.asyncio
    async def test_concurrent_create_only_one_wins(self, registry):
        results = await asyncio.gather(
            registry.create_chain("V1"), registry.create_chain("V1"), return_exceptions=True,
        )
        assert sum(isinstance(r, DuplicateChainError) for r in results) == 1
        assert len(registry) == 1

    def test_registries_are_isolated(self, oracle):
        a, b = ChainRegistry(oracle=oracle), ChainRegistry(oracle=oracle)
        asyncio.run(a.create_chain("V1"))
        assert "V1" not in b

    def test_default_oracle_is_in_memory(self):
        assert isinstance(ChainRegistry().oracle, InMemoryDedupOracle)


class TestDelegation:

    @pytest.mark.asyncio
    async def test_add_reading_delegates(self, registry, clock):
        await registry.create_chain("V1")
        result = await registry.add_reading("V1", _reading(100, "img-0"))
        assert result.success
        clock.advance(hours=1)
        result = await registry.add_reading("V1", _reading(150, "img-1"))
        assert result.success
        assert registry.summarize("V1")["last_valid_km"] == 150

    @pytest.mark.asyncio
    async def test_unknown_vehicle_errors(self, registry):
        with pytest.raises(ChainNotFoundError, match="vehicle chain not found"):
            await registry.add_reading("GHOST", _reading(1, "img"))
        with pytest.raises(ChainNotFoundError):
            registry.summarize("GHOST")
        with pytest.raises(ChainNotFoundError):
            registry.verify_integrity("GHOST")
        with pytest.raises(LedgerError):
            await registry.reactivate("GHOST", "ops")

    @pytest.mark.asyncio
    async def test_verify_integrity_delegates(self, registry):
        await registry.create_chain("V1")
        await registry.add_reading("V1", _reading(100, "img-0"))
        assert registry.verify_integrity("V1").is_valid

    @pytest.mark.asyncio
    async def test_vehicles_do_not_share_history(self, registry):
        await registry.create_chain("V1")
        await registry.create_chain("V2")
        await registry.add_reading("V1", _reading(500, "shared-img"))
        # same photo on another vehicle is not "image reused" for that chain
        result = await registry.add_reading("V2", _reading(10, "shared-img"))
        assert result.success
        assert registry.summarize("V1")["last_valid_km"] == 500
        assert registry.summarize("V2")["last_valid_km"] == 10

    @pytest.mark.asyncio
    async def test_other_vehicle_progresses_while_one_is_locked(self, registry):
        await registry.create_chain("V1")
        await registry.create_chain("V2")
        chain_1 = registry.get_chain("V1")

        async with chain_1._lock:
            result = await asyncio.wait_for(registry.add_reading("V2", _reading(10, "img-v2")), timeout=1)
        assert result.success

    @pytest.mark.asyncio
    async def test_reactivate(self, registry):
        await registry.create_chain("V1")
        chain = registry.get_chain("V1")
        chain.is_active = False
        await registry.reactivate("V1", "ops")
        assert chain.is_active


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_snapshot_restore_into_fresh_registry(self, registry, oracle, config, clock):
        await registry.create_chain("V1")
        await registry.add_reading("V1", _reading(100, "img-0"))
        snap = registry.snapshot()

        fresh = ChainRegistry(oracle=oracle, config=config, clock=clock)
        await fresh.restore(snap)
        assert fresh.summarize("V1") == registry.summarize("V1")
        assert fresh.vehicle_ids() == ["V1"]

    @pytest.mark.asyncio
    async def test_restore_refuses_existing_keys(self, registry):
        await registry.create_chain("V1")
        snap = registry.snapshot()
        snap["V2"] = {"vehicle_id": "V2"}
        with pytest.raises(DuplicateChainError):
            await registry.restore(snap)
        assert "V2" not in registry
