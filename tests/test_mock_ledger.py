import asyncio
import random

import httpx
import pytest
from fastapi.testclient import TestClient

from wager_client.clients.ledger_client import LedgerClient
from wager_client.config import GameVariant, IdentityKind
from wager_client.handles import HandleStore
from wager_client.orchestrator import SettlementOrchestrator
from wager_client.schemas.app_schemas import PlayerAction

AUTH = {"Authorization": "Bearer dev-identity"}
STAKE = 100_000_000
GRID_PARAMS = {"totalCells": 25, "concealedCount": 5}


@pytest.fixture
def ledger_app():
    import mock_ledger.main as mock

    return mock


@pytest.fixture
def client(ledger_app):
    with TestClient(ledger_app.app) as client:
        client.post("/admin/clear-db")
        yield client


def _debit(client, wager_id, account="player-1", amount=STAKE, variant="concealment_grid", params=GRID_PARAMS, headers=AUTH):
    body = {"accountId": account, "amount": amount, "variant": variant, "params": params, "idempotencyKey": f"{wager_id}-debit"}
    return client.post(f"/wagers/{wager_id}/debit", json=body, headers=headers)


def _balance(client, account="player-1"):
    return client.get(f"/accounts/{account}/balance").json()["balance"]


def test_status_rejects_bad_identity(client):
    assert client.get("/status").json()["status"] == "ok"
    resp = client.get("/status", headers={"Authorization": "Bearer stale"})
    assert resp.status_code == 401
    assert resp.json() == {"error": {"code": "expired_delegation"}}


def test_debit_requires_identity(client):
    resp = _debit(client, "w-1", headers={})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "expired_delegation"


def test_debit_is_idempotent_per_wager(client, ledger_app):
    start = _balance(client)
    first = _debit(client, "w-1")
    second = _debit(client, "w-1")

    assert first.status_code == 200
    assert first.json() == second.json()
    assert _balance(client) == start - STAKE

    with ledger_app.SessionLocal() as db:
        assert db.query(ledger_app.LedgerEntry).count() == 1


def test_debit_needs_funds(client, ledger_app):
    resp = _debit(client, "w-1", amount=ledger_app.STARTING_BALANCE + 1)
    assert resp.status_code == 402
    assert resp.json()["error"]["code"] == "insufficient_funds"


def test_one_active_session_per_account(client):
    _debit(client, "w-1")
    active = client.get("/accounts/player-1/active-session").json()
    assert active["wagerId"] == "w-1"
    assert active["status"] == "active"
    assert active["concealed"] == []

    resp = _debit(client, "w-2")
    assert resp.status_code == 409


def test_credit_caps_claimed_payout_and_is_idempotent(client):
    _debit(client, "w-1")
    start = _balance(client)
    body = {"accountId": "player-1", "claimedPayout": STAKE * 100, "terminalState": "cashed_out", "revealed": [7]}

    first = client.post("/wagers/w-1/credit", json=body, headers=AUTH)
    second = client.post("/wagers/w-1/credit", json=body, headers=AUTH)

    assert first.json()["payout"] == STAKE * 25 // 19
    assert first.json() == second.json()
    assert _balance(client) == start + STAKE * 25 // 19
    assert client.get("/accounts/player-1/active-session").json() is None


def test_remote_reveal_of_concealed_cell_loses(client, ledger_app):
    _debit(client, "w-1")
    with ledger_app.SessionLocal() as db:
        mine = db.get(ledger_app.RemoteSession, "w-1").concealed[0]

    snapshot = client.post("/wagers/w-1/actions", json={"action": "reveal", "index": mine}, headers=AUTH).json()
    assert snapshot["status"] == "lost"
    assert mine in snapshot["concealed"]

    credit = client.post("/wagers/w-1/credit", json={"accountId": "player-1", "claimedPayout": STAKE}, headers=AUTH)
    assert credit.json()["payout"] == 0


def test_force_end_blocks_later_credit(client):
    _debit(client, "w-1")
    assert client.post("/wagers/w-1/force-end", json={}, headers=AUTH).json() == {"status": "force_ended"}

    resp = client.post("/wagers/w-1/credit", json={"accountId": "player-1", "claimedPayout": 0}, headers=AUTH)
    assert resp.status_code == 409


def test_orchestrator_round_trip_against_mock(client, ledger_app, session_factory):
    def factory(identity_kind):
        return LedgerClient(
            identity_token="dev-identity" if identity_kind is IdentityKind.AUTHENTICATED else None,
            base_url="http://mock-ledger",
            transport=httpx.ASGITransport(app=ledger_app.app),
        )

    async def run():
        handles = HandleStore(client_factory=factory)
        orchestrator = SettlementOrchestrator(
            handles, session_factory=session_factory, account_id="e2e-player", rng=random.Random(5), remote_authoritative=[]
        )
        try:
            wager = await orchestrator.place_wager(1, GameVariant.CONCEALMENT_GRID)
            safe = next(i for i in range(25) if i not in wager.grid.concealed_set)
            await orchestrator.apply_player_action(wager.wager_id, PlayerAction(action="reveal", index=safe))
            result = await orchestrator.cash_out(wager.wager_id)
            return result, orchestrator.get_cached_balance()
        finally:
            await handles.close()

    result, balance = asyncio.run(run())

    assert result.payout == STAKE * 25 // 19
    assert result.remoteReference
    assert balance == ledger_app.STARTING_BALANCE - STAKE + STAKE * 25 // 19
    assert _balance(client, "e2e-player") == balance
