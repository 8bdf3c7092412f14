"""
GreenKarma Oracle: CrossAppDedupOracle tests

Coverage:
  - reading_fingerprint window semantics
  - InMemoryDedupOracle check / record / verify_transaction / status
  - RedisDedupOracle against a mocked redis.asyncio client, including
    transport errors mapped to OracleUnavailableError
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ledger.dedup_oracle import InMemoryDedupOracle, RedisDedupOracle, reading_fingerprint
from ledger.errors import CrossAppClaimError, OracleUnavailableError

T0 = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


class TestReadingFingerprint:

    def test_same_window_same_fingerprint(self):
        assert reading_fingerprint("V1", 100, T0) == reading_fingerprint("V1", 100, T0 + timedelta(hours=2))

    def test_different_window_differs(self):
        assert reading_fingerprint("V1", 100, T0) != reading_fingerprint("V1", 100, T0 + timedelta(days=1))

    def test_vehicle_normalized(self):
        assert reading_fingerprint(" v1 ", 100, T0) == reading_fingerprint("V1", 100, T0)

    def test_km_and_vehicle_matter(self):
        base = reading_fingerprint("V1", 100, T0)
        assert reading_fingerprint("V1", 101, T0) != base
        assert reading_fingerprint("V2", 100, T0) != base


class TestInMemoryOracle:

    @pytest.mark.asyncio
    async def test_unknown_fingerprint(self):
        record = await InMemoryDedupOracle().check("abc")
        assert record.exists is False
        assert record.source is None

    @pytest.mark.asyncio
    async def test_record_then_check(self):
        oracle = InMemoryDedupOracle()
        tx = await oracle.record("abc", {"source": "EcoMiles", "vehicle_id": "V1"})
        record = await oracle.check("abc")
        assert record.exists is True
        assert record.source == "EcoMiles"
        assert record.tx_hash == tx
        assert record.seen_at is not None

    @pytest.mark.asyncio
    async def test_first_claim_wins(self):
        oracle = InMemoryDedupOracle()
        tx1 = await oracle.record("abc", {"source": "A"})
        with pytest.raises(CrossAppClaimError) as exc:
            await oracle.record("abc", {"source": "B"})
        assert exc.value.source == "A"
        assert exc.value.tx_hash == tx1
        assert (await oracle.check("abc")).source == "A"

    @pytest.mark.asyncio
    async def test_same_source_rerecord_returns_existing_tx(self):
        oracle = InMemoryDedupOracle()
        tx1 = await oracle.record("abc", {"source": "A"})
        assert await oracle.record("abc", {"source": "A"}) == tx1

    @pytest.mark.asyncio
    async def test_entries_for_vehicle(self):
        oracle = InMemoryDedupOracle()
        await oracle.record("abc", {"source": "A", "vehicle_id": "KA01EV1234", "odometer_km": 100})
        await oracle.record("def", {"source": "B", "vehicle_id": "OTHER"})
        entries = await oracle.entries_for_vehicle("ka01ev1234")
        assert [e["fingerprint"] for e in entries] == ["abc"]
        assert entries[0]["odometer_km"] == 100

    @pytest.mark.asyncio
    async def test_verify_transaction(self):
        oracle = InMemoryDedupOracle()
        tx = await oracle.record("abc", {"source": "A", "odometer_km": 100})
        entry = await oracle.verify_transaction(tx)
        assert entry["fingerprint"] == "abc"
        assert entry["odometer_km"] == 100
        assert await oracle.verify_transaction("0xmissing") is None

    @pytest.mark.asyncio
    async def test_network_status(self):
        oracle = InMemoryDedupOracle()
        await oracle.record("abc", {"source": "A"})
        status = await oracle.network_status()
        assert status["connected"] is True
        assert status["block_height"] == 1
        assert status["network"] == "green-karma-network"


class TestRedisOracle:

    def setup_method(self):
        self.client = AsyncMock()
        self.oracle = RedisDedupOracle(self.client)

    @pytest.mark.asyncio
    async def test_check_missing(self):
        self.client.get.return_value = None
        record = await self.oracle.check("abc")
        assert record.exists is False
        self.client.get.assert_awaited_once_with("greenkarma:dedup:fp:abc")

    @pytest.mark.asyncio
    async def test_check_existing(self):
        self.client.get.return_value = json.dumps({
            "source": "EcoMiles", "seen_at": T0.isoformat(), "tx_hash": "0x1",
        })
        record = await self.oracle.check("abc")
        assert record.exists is True
        assert record.source == "EcoMiles"
        assert record.seen_at == T0

    @pytest.mark.asyncio
    async def test_record_new_claim(self):
        self.client.set.return_value = True
        tx = await self.oracle.record("abc", {"source": "GreenKarma"})
        assert tx.startswith("0x")
        first_call = self.client.set.await_args_list[0]
        assert first_call.args[0] == "greenkarma:dedup:fp:abc"
        assert first_call.kwargs == {"nx": True}
        self.client.incr.assert_awaited_once_with("greenkarma:dedup:height")

    @pytest.mark.asyncio
    async def test_record_indexes_vehicle(self):
        self.client.set.return_value = True
        await self.oracle.record("abc", {"source": "GreenKarma", "vehicle_id": "ka01ev1234"})
        self.client.sadd.assert_awaited_once_with("greenkarma:dedup:vehicle:KA01EV1234", "abc")

    @pytest.mark.asyncio
    async def test_record_lost_to_other_source_raises(self):
        self.client.set.return_value = False
        self.client.get.return_value = json.dumps({"source": "Other", "tx_hash": "0xexisting"})
        with pytest.raises(CrossAppClaimError) as exc:
            await self.oracle.record("abc", {"source": "GreenKarma"})
        assert exc.value.source == "Other"
        assert exc.value.tx_hash == "0xexisting"
        self.client.incr.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_record_lost_to_same_source_returns_existing_tx(self):
        self.client.set.return_value = False
        self.client.get.return_value = json.dumps({"source": "GreenKarma", "tx_hash": "0xexisting"})
        assert await self.oracle.record("abc", {"source": "GreenKarma"}) == "0xexisting"
        self.client.incr.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_entries_for_vehicle(self):
        self.client.smembers.return_value = {"abc"}
        self.client.mget.return_value = [json.dumps({"source": "GreenKarma", "odometer_km": 100})]
        entries = await self.oracle.entries_for_vehicle("KA01EV1234")
        assert entries == [{"fingerprint": "abc", "source": "GreenKarma", "odometer_km": 100}]
        self.client.mget.assert_awaited_once_with(["greenkarma:dedup:fp:abc"])

    @pytest.mark.asyncio
    async def test_entries_for_vehicle_transport_error(self):
        self.client.smembers.side_effect = RedisConnectionError("refused")
        with pytest.raises(OracleUnavailableError):
            await self.oracle.entries_for_vehicle("KA01EV1234")

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable_not_duplicate(self):
        self.client.get.side_effect = RedisConnectionError("refused")
        with pytest.raises(OracleUnavailableError):
            await self.oracle.check("abc")

    @pytest.mark.asyncio
    async def test_record_transport_error(self):
        self.client.set.side_effect = RedisConnectionError("refused")
        with pytest.raises(OracleUnavailableError):
            await self.oracle.record("abc", {"source": "GreenKarma"})

    @pytest.mark.asyncio
    async def test_network_status_disconnected(self):
        self.client.ping.side_effect = RedisConnectionError("down")
        status = await self.oracle.network_status()
        assert status["connected"] is False
        assert status["backend"] == "redis"

    @pytest.mark.asyncio
    async def test_network_status_connected(self):
        self.client.ping.return_value = True
        self.client.get.return_value = "4"
        status = await self.oracle.network_status()
        assert status["connected"] is True
        assert status["block_height"] == 4
