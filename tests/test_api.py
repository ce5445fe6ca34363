"""
HTTP surface: commit -> bet -> outcome -> reveal -> verify through FastAPI,
plus error mapping and the admin guard.
"""

import hashlib
import time

import pytest
from fastapi.testclient import TestClient

import main
from config import settings


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.setattr(settings, "ROUNDS_ENABLED", False)
    monkeypatch.setattr(settings, "STARTING_BALANCE", 1_000)
    monkeypatch.setattr(main, "ADMIN_TOKEN", "secret")
    with TestClient(main.app) as c:
        yield c


def test_health(client):
    body = client.get("/api/health").json()
    assert body["ok"] is True
    assert body["fail_closed"] is None


def test_full_bet_flow(client):
    committed = client.post("/api/seeds/alice/commit").json()
    assert len(committed["server_seed_hash"]) == 64
    assert committed["nonce"] == 0

    r = client.put("/api/seeds/alice/client-seed", json={"client_seed": "lucky"})
    assert r.status_code == 200
    assert r.json()["client_seed"] == "lucky"

    r = client.post("/api/bets", json={
        "context": "alice", "game": "dice", "params": {"direction": "OVER", "target": 3}, "stake": 10,
    })
    assert r.status_code == 200, r.text
    placed = r.json()
    assert placed["nonce"] == 0
    assert placed["server_seed_hash"] == committed["server_seed_hash"]

    outcome = client.get(f"/api/bets/{placed['bet_id']}").json()
    assert outcome["status"] == "SETTLED"

    revealed = client.post("/api/seeds/alice/reveal").json()
    assert hashlib.sha256(revealed["server_seed"].encode()).hexdigest() == committed["server_seed_hash"]
    assert revealed["client_seed"] == "lucky"

    check = client.post("/api/verify", json={
        "server_seed": revealed["server_seed"],
        "server_seed_hash": committed["server_seed_hash"],
        "client_seed": "lucky",
        "nonce": 0,
        "game": "dice",
    }).json()
    assert check["commitment_valid"] is True
    assert check["outcome"] == outcome["outcome"]

    balance = client.get("/api/players/alice/balance").json()["balance"]
    assert balance == 1_000 - 10 + outcome["payout"]

    rows = client.get("/api/players/alice/history").json()["rows"]
    assert [row["id"] for row in rows] == [placed["bet_id"]]
    totals = client.get("/api/players/alice/totals").json()
    assert totals["bets"] == 1 and totals["wagered"] == 10


def test_errors_map_to_status_codes(client):
    r = client.post("/api/seeds/bob/reveal")
    assert r.status_code == 409
    assert r.json()["error"] == "NothingToRevealError"

    bet = {"context": "carol", "game": "coin", "params": {"side": "HEADS"}, "stake": 10}
    r = client.post("/api/bets", json=bet)
    assert r.status_code == 409
    assert r.json()["error"] == "NotCommittedError"

    client.post("/api/seeds/carol/commit")
    r = client.post("/api/bets", json={**bet, "stake": 5_000})
    assert r.status_code == 402

    r = client.post("/api/bets", json={**bet, "params": {"side": "EDGE"}})
    assert r.status_code == 400

    assert client.get("/api/bets/nope").status_code == 404
    assert client.get("/api/seeds/carol").json()["nonce"] == 0


def test_admin_credit_requires_token(client):
    body = {"context": "dave", "amount": 50}
    assert client.post("/api/admin/credit", json=body).status_code == 401
    r = client.post("/api/admin/credit", json=body, headers={"Authorization": "Bearer secret"})
    assert r.status_code == 200
    assert r.json()["balance"] == 1_050


def test_games_listing(client):
    body = client.get("/api/games").json()
    assert body["games"] == ["coin", "crash", "dice", "slots"]
    assert body["rounds"] == []


def test_round_contexts_are_not_player_contexts(client):
    assert client.post("/api/seeds/round:R0001/reveal").status_code == 400
    assert client.post("/api/seeds/round:R0001/commit").status_code == 400
    r = client.post("/api/bets", json={
        "context": "round:R0001", "game": "dice", "params": {"target": 3}, "stake": 1,
    })
    assert r.status_code == 422


def test_bet_can_pin_the_commitment_it_saw(client):
    committed = client.post("/api/seeds/erin/commit").json()
    bet = {"context": "erin", "game": "dice", "params": {"target": 3}, "stake": 10}
    r = client.post("/api/bets", json={**bet, "nonce": 1})
    assert r.status_code == 409
    assert client.get("/api/players/erin/balance").json()["balance"] == 1_000
    r = client.post("/api/bets", json={
        **bet, "server_seed_hash": committed["server_seed_hash"],
        "client_seed": committed["client_seed"], "nonce": 0,
    })
    assert r.status_code == 200, r.text
    assert r.json()["rotated"] is None


def test_event_stream_releases_subscriber_on_disconnect(client):
    hub = main.app.state.events
    with client.websocket_connect("/api/events") as ws:
        client.post("/api/seeds/frank/commit")
        client.post("/api/bets", json={
            "context": "frank", "game": "dice", "params": {"target": 3}, "stake": 10,
        })
        event = ws.receive_json()
        while event["type"] != "bet.placed":
            event = ws.receive_json()
        assert event["context"] == "frank"
    for _ in range(100):
        if hub.subscribers == 0:
            break
        time.sleep(0.01)
    assert hub.subscribers == 0
