"""Tests for allocation API endpoints."""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cardmint.api.allocation import get_current_time
from cardmint import main as main_module
from cardmint.config import CARD_ID_TO_MINT
from cardmint.db import load_receipts
from cardmint.main import app
from cardmint.models.db import AllocationEventDB
from cardmint.services.allocation_engine import AllocationEngine, get_allocation_engine
from cardmint.services.merkle import MerkleTree, format_hash
from tests.factories import ALICE, BOB, CAROL, EARLY_OPEN, MALLORY, PUBLIC_OPEN, make_engine


@pytest.fixture
def clock() -> dict[str, int]:
    """Mutable current time served to the API."""
    return {"now": PUBLIC_OPEN + 10}


@pytest.fixture
def api(client: AsyncClient, engine: AllocationEngine, clock: dict[str, int]) -> AsyncClient:
    """Client wired to the test engine and clock."""
    app.dependency_overrides[get_allocation_engine] = lambda: engine
    app.dependency_overrides[get_current_time] = lambda: clock["now"]
    return client


class TestMintEndpoint:
    async def test_mint_success(self, api: AsyncClient) -> None:
        """Mint returns the new unique id and both events."""
        response = await api.post("/allocation/mint", json={"sender": ALICE, "payment": 1})

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "success"
        data = body["data"]
        assert data["unique_id"] == CARD_ID_TO_MINT + 1
        assert data["phase"] == "direct_mint"
        assert [e["item_id"] for e in data["events"]] == [CARD_ID_TO_MINT, CARD_ID_TO_MINT + 1]

    async def test_mint_wrong_payment(self, api: AsyncClient, engine: AllocationEngine) -> None:
        """Wrong payment is a 402 known failure and nothing is minted."""
        response = await api.post("/allocation/mint", json={"sender": ALICE, "payment": 2})

        assert response.status_code == 402
        body = response.json()
        assert body["outcome"] == "known_failure"
        assert body["failure"]["kind"] == "incorrect_payment"
        assert engine.total_issued() == 0

    async def test_mint_invalid_address(self, api: AsyncClient) -> None:
        """Malformed sender fails request validation."""
        response = await api.post("/allocation/mint", json={"sender": "alice", "payment": 1})

        assert response.status_code == 422


class TestPurchaseEndpoint:
    async def test_purchase_success(self, api: AsyncClient) -> None:
        """Public purchase during the window succeeds."""
        response = await api.post(
            "/allocation/purchase", json={"sender": BOB, "amount": 2, "payment": 2}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["amount"] == 2
        assert data["events"][1]["count"] == 2

    async def test_purchase_before_window(self, api: AsyncClient, clock: dict[str, int]) -> None:
        """Purchase before public open is refused with 403."""
        clock["now"] = PUBLIC_OPEN - 1

        response = await api.post(
            "/allocation/purchase", json={"sender": BOB, "amount": 1, "payment": 1}
        )

        assert response.status_code == 403
        assert response.json()["failure"]["kind"] == "window_closed"

    async def test_purchase_quota(self, api: AsyncClient) -> None:
        """Third public purchase hits the quota."""
        body = {"sender": BOB, "amount": 1, "payment": 1}
        assert (await api.post("/allocation/purchase", json=body)).status_code == 200
        assert (await api.post("/allocation/purchase", json=body)).status_code == 200

        response = await api.post("/allocation/purchase", json=body)

        assert response.status_code == 409
        assert response.json()["failure"]["kind"] == "quota_exceeded"

    async def test_purchase_invalid_amount(self, api: AsyncClient) -> None:
        """Amount above MAX_PER_TX is rejected."""
        response = await api.post(
            "/allocation/purchase", json={"sender": BOB, "amount": 3, "payment": 3}
        )

        assert response.status_code == 400
        assert response.json()["failure"]["kind"] == "invalid_amount"


class TestEarlyAccessEndpoint:
    async def test_early_access_success(
        self, api: AsyncClient, clock: dict[str, int], allowlist_tree: MerkleTree
    ) -> None:
        """A valid hex proof is accepted."""
        clock["now"] = EARLY_OPEN + 1

        response = await api.post(
            "/allocation/early-access",
            json={
                "sender": ALICE,
                "amount": 1,
                "index": 0,
                "proof": [format_hash(node) for node in allowlist_tree.proof(0)],
                "payment": 1,
            },
        )

        assert response.status_code == 200
        assert response.json()["data"]["phase"] == "early_access"

    async def test_early_access_empty_proof(self, api: AsyncClient) -> None:
        """An empty proof is refused with 403."""
        response = await api.post(
            "/allocation/early-access",
            json={"sender": MALLORY, "amount": 1, "index": 0, "proof": [], "payment": 1},
        )

        assert response.status_code == 403
        assert response.json()["failure"]["kind"] == "invalid_proof"

    async def test_early_access_malformed_proof(self, api: AsyncClient) -> None:
        """Proof nodes must be 32-byte hex."""
        response = await api.post(
            "/allocation/early-access",
            json={"sender": ALICE, "amount": 1, "index": 0, "proof": ["0x12"], "payment": 1},
        )

        assert response.status_code == 422

    async def test_early_access_negative_index(self, api: AsyncClient) -> None:
        """Index must be non-negative."""
        response = await api.post(
            "/allocation/early-access",
            json={"sender": ALICE, "amount": 1, "index": -1, "proof": [], "payment": 1},
        )

        assert response.status_code == 422

    async def test_early_access_index_beyond_word(self, api: AsyncClient) -> None:
        """Index must fit in 32 bytes; oversized values are a validation error."""
        response = await api.post(
            "/allocation/early-access",
            json={"sender": ALICE, "amount": 1, "index": 2**256, "proof": [], "payment": 1},
        )

        assert response.status_code == 422


class TestReadEndpoints:
    async def test_supply(self, api: AsyncClient) -> None:
        """Supply reflects committed allocations."""
        await api.post("/allocation/mint", json={"sender": ALICE, "payment": 1})

        response = await api.get("/allocation/supply")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["issued"] == 1
        assert data["remaining"] == data["max_supply"] - 1
        assert data["current_unique_id"] == CARD_ID_TO_MINT + 1
        assert data["uri"] == f"https://cards.test/{CARD_ID_TO_MINT}.json"

    async def test_quota(self, api: AsyncClient) -> None:
        """Quota endpoint reports combined usage."""
        await api.post("/allocation/purchase", json={"sender": BOB, "amount": 1, "payment": 1})

        response = await api.get(f"/allocation/quota/{BOB.upper().replace('0X', '0x')}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["address"] == BOB
        assert data["used"] == 1
        assert data["public_limit"] == 2
        assert data["early_access_limit"] == 1

    async def test_quota_bad_address(self, api: AsyncClient) -> None:
        """Malformed address is a 400."""
        response = await api.get("/allocation/quota/nobody")

        assert response.status_code == 400


class TestEventsEndpoint:
    async def test_committed_allocations_are_logged(self, api: AsyncClient) -> None:
        """Every committed allocation appears in the event log in order."""
        await api.post("/allocation/mint", json={"sender": ALICE, "payment": 1})
        await api.post("/allocation/purchase", json={"sender": BOB, "amount": 2, "payment": 2})

        response = await api.get("/events")

        assert response.status_code == 200
        events = response.json()["data"]["events"]
        assert [(e["to_address"], e["item_id"], e["count"]) for e in events] == [
            (ALICE, CARD_ID_TO_MINT, 1),
            (ALICE, CARD_ID_TO_MINT + 1, 1),
            (BOB, CARD_ID_TO_MINT, 1),
            (BOB, CARD_ID_TO_MINT + 2, 2),
        ]
        assert all(e["from_address"] is None for e in events)

    async def test_rejected_allocations_are_not_logged(self, api: AsyncClient) -> None:
        """Failures leave the log untouched."""
        await api.post("/allocation/mint", json={"sender": ALICE, "payment": 5})

        response = await api.get("/events")

        assert response.json()["data"]["total"] == 0

    async def test_filter_by_address(self, api: AsyncClient) -> None:
        """address= narrows to one recipient."""
        await api.post("/allocation/mint", json={"sender": ALICE, "payment": 1})
        await api.post("/allocation/mint", json={"sender": BOB, "payment": 1})

        response = await api.get("/events", params={"address": BOB})

        events = response.json()["data"]["events"]
        assert len(events) == 2
        assert {e["to_address"] for e in events} == {BOB}

    async def test_filter_bad_address(self, api: AsyncClient) -> None:
        """Malformed filter address is a 400."""
        response = await api.get("/events", params={"address": "bob"})

        assert response.status_code == 400


def _session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


class TestDurability:
    async def test_failed_recording_leaves_engine_untouched(
        self, api: AsyncClient, engine: AllocationEngine, async_engine: AsyncEngine
    ) -> None:
        """If the event log rejects the write, no quota, supply or id is consumed."""
        # A row already holds the id the engine will issue next
        async with _session_factory(async_engine)() as session:
            session.add(
                AllocationEventDB(
                    allocation_id=CARD_ID_TO_MINT + 1,
                    position=0,
                    phase="public_sale",
                    to_address=ALICE,
                    item_id=CARD_ID_TO_MINT,
                    count=1,
                )
            )
            await session.commit()

        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/allocation/purchase", json={"sender": BOB, "amount": 1, "payment": 1}
            )

        assert response.status_code == 500
        assert response.json()["outcome"] == "unknown_failure"
        assert engine.current_unique_id == CARD_ID_TO_MINT
        assert engine.quota_used(BOB) == 0
        assert engine.total_issued() == 0

    async def test_restored_engine_does_not_reuse_ids(
        self, api: AsyncClient, allowlist_tree: MerkleTree, async_engine: AsyncEngine
    ) -> None:
        """A fresh engine restored from the log continues where the last one stopped."""
        first = await api.post(
            "/allocation/purchase", json={"sender": BOB, "amount": 1, "payment": 1}
        )
        assert first.json()["data"]["unique_id"] == CARD_ID_TO_MINT + 1

        restarted = make_engine(tree=allowlist_tree)
        async with _session_factory(async_engine)() as session:
            restarted.restore(await load_receipts(session))
        app.dependency_overrides[get_allocation_engine] = lambda: restarted

        second = await api.post(
            "/allocation/purchase", json={"sender": CAROL, "amount": 1, "payment": 1}
        )

        assert second.status_code == 200
        assert second.json()["data"]["unique_id"] == CARD_ID_TO_MINT + 2
        assert restarted.quota_used(BOB) == 1
        assert restarted.total_issued() == 2

    async def test_lifespan_restores_engine_from_log(
        self,
        api: AsyncClient,
        async_engine: AsyncEngine,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Application startup rebuilds the process-wide engine from the event log."""
        await api.post("/allocation/mint", json={"sender": ALICE, "payment": 1})
        await api.post("/allocation/purchase", json={"sender": BOB, "amount": 2, "payment": 2})

        async def no_init_db() -> None:
            return None

        monkeypatch.setattr(main_module, "init_db", no_init_db)
        monkeypatch.setattr(
            main_module, "get_session_factory", lambda: _session_factory(async_engine)
        )

        async with main_module.lifespan(app):
            restored = get_allocation_engine()

        assert restored.current_unique_id == CARD_ID_TO_MINT + 2
        assert restored.total_issued() == 2
        assert restored.quota_used(BOB) == 1
        assert restored.quota_used(ALICE) == 0
