"""
Tests for the relay server and the HTTP client that talks to it.
"""

from contextlib import asynccontextmanager

import httpx
import pytest
from fastapi.testclient import TestClient

from chatclient.api import ChatAPI
from chatclient.conversation import Conversation
from chatclient.identity import IdentitySession, InvalidPassword, Session, UserRecord, UsernameTaken
from chatclient.storage import MemoryDeviceStore
from chatcrypto import DecryptionFailed, MessageCipher, b64decode, b64encode
from chatserver import auth
from chatserver.auth import ChallengeStore
from chatserver.config import ServerSettings
from chatserver.main import create_app


@pytest.fixture
def server_settings(tmp_path) -> ServerSettings:
    return ServerSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
        secret_key="test-secret",
    )


@pytest.fixture
def client(server_settings):
    with TestClient(create_app(server_settings)) as test_client:
        yield test_client


def _user_payload(username, keys, key_manager, vault, display_name=None):
    return {
        "username": username,
        "display_name": display_name or username.title(),
        "public_key": key_manager.export_public(keys.public_key),
        "encrypted_private_key": vault.wrap(
            key_manager.export_private(keys.private_key).encode(), "pw"
        ),
    }


def _challenge(client, username):
    response = client.post("/api/auth/challenge", json={"username": username})
    assert response.status_code == 200
    body = response.json()
    return body["challenge_id"], b64decode(body["challenge"])


def _answer(client, challenge_id, username, answer):
    return client.post("/api/auth/token", json={
        "challenge_id": challenge_id,
        "username": username,
        "response": b64encode(answer),
    })


def _token(client, username, keys):
    challenge_id, challenge = _challenge(client, username)
    response = _answer(client, challenge_id, username, keys.private_key.decrypt(challenge))
    assert response.status_code == 200
    return response.json()["access_token"]


@pytest.fixture
def users(client, alice_keys, bob_keys, key_manager, vault):
    alice = client.post("/api/users", json=_user_payload("alice", alice_keys, key_manager, vault))
    bob = client.post("/api/users", json=_user_payload("bob", bob_keys, key_manager, vault))
    assert alice.status_code == 201
    assert bob.status_code == 201
    return alice.json(), bob.json()


def test_create_and_fetch_user(client, users):
    alice, _ = users
    assert alice["username"] == "alice"

    by_name = client.get("/api/users/by-username", params={"username": "alice"})
    assert by_name.status_code == 200
    assert by_name.json() == alice

    by_id = client.get(f"/api/users/{alice['id']}")
    assert by_id.json()["encrypted_private_key"] == alice["encrypted_private_key"]


def test_unknown_users_are_404(client):
    assert client.get("/api/users/by-username", params={"username": "nobody"}).status_code == 404
    assert client.get("/api/users/does-not-exist").status_code == 404


def test_duplicate_username_is_409(client, users, alice_keys, key_manager, vault):
    response = client.post("/api/users", json=_user_payload("alice", alice_keys, key_manager, vault))
    assert response.status_code == 409
    assert response.json()["detail"] == "Username already taken"


def test_malformed_key_material_is_422(client, alice_keys, key_manager, vault):
    payload = _user_payload("mallory", alice_keys, key_manager, vault)
    payload["public_key"] = "not a key"
    assert client.post("/api/users", json=payload).status_code == 422

    payload = _user_payload("mallory", alice_keys, key_manager, vault)
    payload["encrypted_private_key"] = b64encode(b"too short")
    assert client.post("/api/users", json=payload).status_code == 422


def test_search_users(client, users, key_manager, vault):
    alice, bob = users
    response = client.get("/api/users")
    assert [u["username"] for u in response.json()["users"]] == ["alice", "bob"]
    assert "encrypted_private_key" not in response.json()["users"][0]

    response = client.get("/api/users", params={"q": "BO"})
    assert [u["username"] for u in response.json()["users"]] == ["bob"]

    response = client.get("/api/users", params={"exclude": alice["id"]})
    assert [u["id"] for u in response.json()["users"]] == [bob["id"]]


def test_challenge_issues_token_for_key_holder(client, users, alice_keys):
    token = _token(client, "alice", alice_keys)
    assert token


def test_challenge_rejects_wrong_key_and_reuse(client, users, alice_keys, bob_keys):
    challenge_id, challenge = _challenge(client, "alice")
    with pytest.raises(DecryptionFailed):
        bob_keys.private_key.decrypt(challenge)

    assert _answer(client, challenge_id, "alice", b"\x00" * 32).status_code == 401

    # The failed attempt consumed the challenge
    answer = alice_keys.private_key.decrypt(challenge)
    assert _answer(client, challenge_id, "alice", answer).status_code == 401


def test_challenge_is_bound_to_its_user(client, users, alice_keys):
    challenge_id, challenge = _challenge(client, "alice")
    answer = alice_keys.private_key.decrypt(challenge)
    assert _answer(client, challenge_id, "bob", answer).status_code == 401


def test_new_challenge_does_not_cancel_pending_one(client, users, alice_keys):
    first_id, first = _challenge(client, "alice")
    for _ in range(3):
        _challenge(client, "alice")

    response = _answer(client, first_id, "alice", alice_keys.private_key.decrypt(first))
    assert response.status_code == 200
    assert response.json()["username"] == "alice"


def test_expired_challenges_are_dropped(monkeypatch, key_manager, alice_keys):
    now = [1000.0]
    monkeypatch.setattr(auth.time, "monotonic", lambda: now[0])
    store = ChallengeStore(ttl_seconds=60, key_manager=key_manager)
    public_key = key_manager.export_public(alice_keys.public_key)

    challenge_id, challenge = store.issue("alice", public_key)
    answer = alice_keys.private_key.decrypt(b64decode(challenge))
    now[0] += 61
    assert not store.redeem(challenge_id, "alice", answer)

    store.issue("alice", public_key)
    now[0] += 61
    store.issue("alice", public_key)
    assert len(store) == 1


def test_challenge_for_unknown_user(client):
    assert client.post("/api/auth/challenge", json={"username": "nobody"}).status_code == 404


def test_messages_require_token(client, users):
    _, bob = users
    response = client.post("/api/messages", json={"recipient_id": bob["id"], "encrypted_content": "x"})
    assert response.status_code == 401
    assert client.get(f"/api/messages/{bob['id']}").status_code == 401


def test_send_and_list_messages(client, users, alice_keys, bob_keys, key_manager, vault):
    alice, bob = users
    alice_auth = {"Authorization": f"Bearer {_token(client, 'alice', alice_keys)}"}
    bob_auth = {"Authorization": f"Bearer {_token(client, 'bob', bob_keys)}"}

    to_bob = MessageCipher.encrypt("hello bob", bob_keys.public_key)
    response = client.post(
        "/api/messages",
        json={"recipient_id": bob["id"], "encrypted_content": to_bob},
        headers=alice_auth,
    )
    assert response.status_code == 201
    assert response.json()["sender_id"] == alice["id"]

    to_alice = MessageCipher.encrypt("hello alice", alice_keys.public_key)
    client.post("/api/messages", json={"recipient_id": alice["id"], "encrypted_content": to_alice},
                headers=bob_auth)

    carol = client.post("/api/users", json=_user_payload("carol", alice_keys, key_manager, vault))
    client.post("/api/messages", json={"recipient_id": carol.json()["id"], "encrypted_content": "x"},
                headers=alice_auth)

    messages = client.get(f"/api/messages/{alice['id']}", headers=bob_auth).json()["messages"]
    assert [m["encrypted_content"] for m in messages] == [to_bob, to_alice]
    assert MessageCipher.decrypt(messages[0]["encrypted_content"], bob_keys.private_key) == "hello bob"


def test_send_rejects_spoofed_sender_and_unknown_recipient(client, users, alice_keys):
    alice, bob = users
    auth = {"Authorization": f"Bearer {_token(client, 'alice', alice_keys)}"}
    response = client.post(
        "/api/messages",
        json={"sender_id": bob["id"], "recipient_id": alice["id"], "encrypted_content": "x"},
        headers=auth,
    )
    assert response.status_code == 403

    response = client.post(
        "/api/messages", json={"recipient_id": "nobody", "encrypted_content": "x"}, headers=auth
    )
    assert response.status_code == 404


def test_websocket_push_to_recipient(client, users, alice_keys, bob_keys):
    alice, bob = users
    alice_token = _token(client, "alice", alice_keys)
    bob_token = _token(client, "bob", bob_keys)

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": bob_token})
        assert websocket.receive_json() == {"type": "auth_success", "user_id": bob["id"]}

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}

        ciphertext = MessageCipher.encrypt("pushed", bob_keys.public_key)
        client.post(
            "/api/messages",
            json={"recipient_id": bob["id"], "encrypted_content": ciphertext},
            headers={"Authorization": f"Bearer {alice_token}"},
        )
        frame = websocket.receive_json()
        assert frame["type"] == "message"
        assert frame["message"]["sender_id"] == alice["id"]
        assert MessageCipher.decrypt(frame["message"]["encrypted_content"], bob_keys.private_key) == "pushed"


def test_websocket_rejects_bad_token(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": "garbage"})
        assert websocket.receive_json() == {"type": "error", "message": "Invalid token"}


def test_websocket_answers_malformed_frames(client, users, bob_keys):
    _, bob = users
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": _token(client, "bob", bob_keys)})
        assert websocket.receive_json()["type"] == "auth_success"

        websocket.send_text("not json")
        assert websocket.receive_json() == {"type": "error", "message": "Malformed frame"}

        websocket.send_json(["ping"])
        assert websocket.receive_json() == {"type": "error", "message": "Malformed frame"}

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}


def test_websocket_malformed_auth_frame(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_text("{")
        assert websocket.receive_json() == {"type": "error", "message": "Malformed frame"}


@asynccontextmanager
async def in_process_api(settings):
    """ChatAPI wired straight to the ASGI app, without a network or lifespan"""
    app = create_app(settings)
    await app.state.db.create_tables()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield ChatAPI("http://test", http_client=http_client)
    await app.state.db.dispose()


@pytest.mark.asyncio
async def test_identity_session_over_http(server_settings, crypto_settings):
    async with in_process_api(server_settings) as api:
        await _identity_flow(api, crypto_settings)


async def _identity_flow(api, crypto_settings):
    alice_identity = IdentitySession(api, MemoryDeviceStore(), settings=crypto_settings)
    alice = await alice_identity.register("alice", "Alice", "correct-horse")
    bob_identity = IdentitySession(api, MemoryDeviceStore(), settings=crypto_settings)
    bob_registered = await bob_identity.register("bob", "Bob", "battery-staple")

    with pytest.raises(UsernameTaken):
        await bob_identity.register("alice", "Not Alice", "pw")
    existing = await api.find_user_by_username("bob")
    with pytest.raises(UsernameTaken):
        await api.insert_user(UserRecord(
            username="bob", display_name="Another Bob",
            public_key=existing.public_key,
            encrypted_private_key=existing.encrypted_private_key,
        ))

    await api.authenticate(alice)
    bob_record = await api.get_user_by_id(bob_registered.id)
    conversation = Conversation(alice, bob_record)
    ciphertext = conversation.prepare_outgoing("hello")
    record = await api.insert_message(alice.id, bob_record.id, ciphertext)
    assert record.encrypted_content != "hello"

    bob_device = IdentitySession(api, MemoryDeviceStore(), settings=crypto_settings)
    with pytest.raises(InvalidPassword):
        await bob_device.login("bob", "wrong-password")
    bob = await bob_device.login("bob", "battery-staple")
    await api.authenticate(bob)

    alice_record = await api.find_user_by_username("alice")
    view = Conversation(bob, alice_record)
    lines = await view.load_async(await api.list_messages(bob.id, alice.id))
    assert [line.text for line in lines] == ["hello"]


@pytest.mark.asyncio
@pytest.mark.parametrize("username", ["alice/work", "bob?x=1", "carol#home", "dave%2F"])
async def test_usernames_with_url_characters(server_settings, crypto_settings, username):
    async with in_process_api(server_settings) as api:
        identity = IdentitySession(api, MemoryDeviceStore(), settings=crypto_settings)
        registered = await identity.register(username, "Someone", "pw")

        fresh = IdentitySession(api, MemoryDeviceStore(), settings=crypto_settings)
        session = await fresh.login(username, "pw")
        assert session.id == registered.id
        assert session.username == username

        with pytest.raises(UsernameTaken):
            await fresh.register(username, "Someone Else", "pw")


@pytest.mark.asyncio
async def test_authenticate_rejects_foreign_challenge(alice_keys):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/auth/challenge"
        return httpx.Response(200, json={
            "challenge_id": "c1",
            "challenge": b64encode(b"\x00" * 256),
        })

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    api = ChatAPI("http://test", http_client=http_client)
    session = Session(id="u1", username="alice", display_name="Alice",
                      private_key=alice_keys.private_key)
    with pytest.raises(DecryptionFailed):
        await api.authenticate(session)
    assert api.token is None
    await api.aclose()


@pytest.mark.asyncio
async def test_lookup_does_not_alias_other_users(server_settings, crypto_settings):
    async with in_process_api(server_settings) as api:
        bob = await IdentitySession(api, MemoryDeviceStore(), settings=crypto_settings).register(
            "bob", "Bob", "pw"
        )
        assert await api.find_user_by_username("bob?x=1") is None
        assert await api.find_user_by_username("bob/") is None
        assert (await api.find_user_by_username("bob")).id == bob.id
        assert await api.get_user_by_id(f"{bob.id}/..") is None
