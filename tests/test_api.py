"""Tests for the FastAPI XOLink interface."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from xolink import ui
from xolink.client import create_broker
from xolink.ui import app


client = TestClient(app)


@pytest.fixture(autouse=True)
def fresh_broker():
    ui.BROKER = create_broker()
    yield ui.BROKER


def as_user(uid, handle=None):
    headers = {"X-User-Id": uid}
    if handle:
        headers["X-User-Handle"] = handle
    return headers


ALICE = as_user("alice", "Alice")
BOB = as_user("bob", "Bob")
CAROL = as_user("carol", "Carol")


def _start_friend_game():
    created = client.post("/api/session", headers=ALICE)
    assert created.status_code == 200
    game_id = created.json()["id"]
    joined = client.post(f"/api/session/{game_id}/join", headers=BOB)
    assert joined.status_code == 200
    return game_id


def _move(game_id, headers, cell):
    return client.post(
        f"/api/session/{game_id}/move", json={"cellIndex": cell}, headers=headers
    )


def test_health():
    assert client.get("/health").json() == {"status": "ok"}


def test_requires_identity():
    response = client.post("/api/session")
    assert response.status_code == 401


def test_create_session_waits_for_opponent():
    response = client.post("/api/session", headers=ALICE)
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "waiting"
    assert payload["statusText"] == "Waiting for opponent..."
    assert payload["symbol"] == "X"
    assert payload["playerX"] == {"uid": "alice", "handle": "Alice"}
    assert payload["playerO"] is None
    assert payload["board"] == [None] * 9
    assert len(payload["id"]) == 8


def test_join_and_play_friend_game():
    game_id = _start_friend_game()

    state = client.get(f"/api/session/{game_id}", headers=BOB).json()
    assert state["status"] == "playing"
    assert state["symbol"] == "O"
    assert state["statusText"] == "Waiting for X..."

    moved = _move(game_id, ALICE, 4)
    assert moved.status_code == 200
    state = moved.json()
    assert state["accepted"] is True
    assert state["board"][4] == "X"
    assert state["turn"] == "O"
    assert state["yourTurn"] is False


def test_invalid_move_is_ignored():
    game_id = _start_friend_game()
    assert _move(game_id, ALICE, 0).json()["accepted"] is True

    duplicate = _move(game_id, BOB, 0)
    assert duplicate.status_code == 200
    assert duplicate.json()["accepted"] is False
    assert duplicate.json()["board"][0] == "X"

    out_of_turn = _move(game_id, ALICE, 1)
    assert out_of_turn.json()["accepted"] is False


def test_rejects_cell_out_of_range():
    game_id = _start_friend_game()
    assert _move(game_id, ALICE, 9).status_code == 422


def test_second_join_is_refused():
    game_id = _start_friend_game()
    response = client.post(f"/api/session/{game_id}/join", headers=CAROL)
    assert response.status_code == 404
    assert response.json()["detail"] == "Game not found or is already full"


def test_join_missing_session_returns_404():
    response = client.post("/api/session/INVALID/join", headers=BOB)
    assert response.status_code == 404


def test_cancel_waiting_session():
    game_id = client.post("/api/session", headers=ALICE).json()["id"]
    assert client.delete(f"/api/session/{game_id}", headers=BOB).json() == {"cancelled": False}
    assert client.delete(f"/api/session/{game_id}", headers=ALICE).json() == {"cancelled": True}
    assert client.get(f"/api/session/{game_id}", headers=ALICE).status_code == 404


def test_full_game_updates_profiles_and_rematch():
    game_id = _start_friend_game()
    for headers, cell in ((ALICE, 0), (BOB, 3), (ALICE, 1), (BOB, 4), (ALICE, 2)):
        assert _move(game_id, headers, cell).json()["accepted"] is True

    final = client.get(f"/api/session/{game_id}", headers=BOB).json()
    assert final["status"] == "finished"
    assert final["winner"] == "X"
    assert final["winningLine"] == [0, 1, 2]
    assert final["statusText"] == "You Lost!"

    alice = client.get("/api/profile/alice").json()
    assert alice["points"] == 20
    assert alice["level"] == 2
    assert alice["gameHistory"][0]["result"] == "win"
    assert alice["gameHistory"][0]["opponentHandle"] == "Bob"
    bob = client.get("/api/profile/bob").json()
    assert bob["points"] == 0
    assert bob["gameHistory"][0]["result"] == "loss"

    assert client.post(f"/api/session/{game_id}/rematch", headers=CAROL).status_code == 403
    rematch = client.post(f"/api/session/{game_id}/rematch", headers=BOB)
    assert rematch.status_code == 200
    state = rematch.json()
    assert state["status"] == "playing"
    assert state["board"] == [None] * 9
    assert state["turn"] == "X"
    assert state["winner"] is None


def test_rematch_unfinished_game_conflicts():
    game_id = _start_friend_game()
    _move(game_id, ALICE, 0)
    response = client.post(f"/api/session/{game_id}/rematch", headers=ALICE)
    assert response.status_code == 409


def test_rematch_fresh_random_game_conflicts():
    client.post("/api/queue", headers=ALICE)
    game_id = client.post("/api/queue", headers=BOB).json()["sessionId"]
    response = client.post(f"/api/session/{game_id}/rematch", headers=BOB)
    assert response.status_code == 409
    stale = client.post(f"/api/session/{game_id}/rematch", json={"round": 0}, headers=BOB)
    assert stale.status_code == 409


def test_late_rematch_for_same_round_converges():
    game_id = _start_friend_game()
    for headers, cell in ((ALICE, 0), (BOB, 3), (ALICE, 1), (BOB, 4), (ALICE, 2)):
        _move(game_id, headers, cell)
    seen = client.get(f"/api/session/{game_id}", headers=ALICE).json()["round"]

    first = client.post(f"/api/session/{game_id}/rematch", json={"round": seen}, headers=BOB)
    late = client.post(f"/api/session/{game_id}/rematch", json={"round": seen}, headers=ALICE)
    assert first.status_code == 200
    assert late.status_code == 200
    assert late.json()["round"] == seen + 1
    assert late.json()["board"] == [None] * 9


def test_missing_profile_returns_404():
    assert client.get("/api/profile/nobody").status_code == 404


def test_random_matchmaking_over_http():
    first = client.post("/api/queue", headers=ALICE).json()
    assert first == {"status": "queued", "sessionId": None}
    assert client.get("/api/queue", headers=ALICE).json()["status"] == "queued"

    second = client.post("/api/queue", headers=BOB).json()
    assert second["status"] == "matched"
    game_id = second["sessionId"]

    polled = client.get("/api/queue", headers=ALICE).json()
    assert polled == {"status": "matched", "sessionId": game_id}

    state = client.get(f"/api/session/{game_id}", headers=ALICE).json()
    assert state["symbol"] == "X"
    assert state["mode"] == "random"
    assert state["statusText"] == "Your turn"


def test_cancel_matchmaking():
    client.post("/api/queue", headers=ALICE)
    assert client.delete("/api/queue", headers=ALICE).json() == {"status": "cancelled"}
    assert client.post("/api/queue", headers=BOB).json()["status"] == "queued"


def test_poll_reports_idle_without_queue_entry():
    assert client.get("/api/queue", headers=ALICE).json() == {"status": "idle", "sessionId": None}
    client.post("/api/queue", headers=ALICE)
    client.delete("/api/queue", headers=ALICE)
    assert client.get("/api/queue", headers=ALICE).json()["status"] == "idle"


def test_session_websocket_streams_updates():
    game_id = _start_friend_game()
    with client.websocket_connect(f"/ws/session/{game_id}?uid=bob") as websocket:
        initial = websocket.receive_json()
        assert initial["type"] == "state"
        assert initial["symbol"] == "O"

        _move(game_id, ALICE, 4)
        update = websocket.receive_json()
        assert update["board"][4] == "X"
        assert update["yourTurn"] is True

        websocket.send_json({"type": "move", "cellIndex": 0})
        update = websocket.receive_json()
        assert update["board"][0] == "O"
        assert update["turn"] == "X"


def test_session_websocket_survives_malformed_messages():
    game_id = _start_friend_game()
    with client.websocket_connect(f"/ws/session/{game_id}?uid=alice") as websocket:
        assert websocket.receive_json()["type"] == "state"

        websocket.send_json({"type": "move", "cellIndex": "abc"})
        assert websocket.receive_json()["type"] == "error"
        websocket.send_json({"type": "move"})
        assert websocket.receive_json()["type"] == "error"
        websocket.send_json(["move", 0])
        assert websocket.receive_json()["type"] == "error"
        websocket.send_json({"type": "dance"})
        assert websocket.receive_json()["type"] == "error"

        websocket.send_json({"type": "move", "cellIndex": 4})
        update = websocket.receive_json()
        assert update["type"] == "state"
        assert update["board"][4] == "X"


def test_session_websocket_reports_cancelled_game():
    game_id = client.post("/api/session", headers=ALICE).json()["id"]
    with client.websocket_connect(f"/ws/session/{game_id}?uid=alice") as websocket:
        assert websocket.receive_json()["status"] == "waiting"
        client.delete(f"/api/session/{game_id}", headers=ALICE)
        assert websocket.receive_json() == {"type": "closed", "id": game_id}


def test_queue_websocket_matches_waiting_client():
    with client.websocket_connect("/ws/queue?uid=alice&handle=Alice") as websocket:
        assert websocket.receive_json() == {"type": "queued"}
        matched = client.post("/api/queue", headers=BOB).json()
        message = websocket.receive_json()
        assert message == {"type": "matched", "sessionId": matched["sessionId"]}
    assert ui.BROKER.store.read("queue") is None


def test_queue_websocket_matches_immediately():
    client.post("/api/queue", headers=BOB)
    with client.websocket_connect("/ws/queue?uid=alice") as websocket:
        message = websocket.receive_json()
        assert message["type"] == "matched"


def test_queue_websocket_cancel():
    with client.websocket_connect("/ws/queue?uid=alice") as websocket:
        assert websocket.receive_json() == {"type": "queued"}
        websocket.send_json({"type": "cancel"})
        assert websocket.receive_json() == {"type": "cancelled"}
    assert ui.BROKER.store.read("queue") is None
