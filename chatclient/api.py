"""
HTTP and WebSocket client for the chat server.

Implements the UserDirectory and MessageStore contracts over the server's
REST API, and turns the WebSocket push channel into an async iterator of new
messages.
"""

import json
import logging
from typing import AsyncIterator, List, Optional
from urllib.parse import quote

import httpx
import websockets

from chatcrypto import b64decode, b64encode

from .identity import MessageRecord, Session, UserRecord, UsernameTaken

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Unexpected response from the chat server"""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Server returned {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def _detail(response: httpx.Response) -> str:
    try:
        return response.json().get("detail", response.text)
    except ValueError:
        return response.text


class ChatAPI:
    """
    Client for the chat server API.

    Authenticated calls need a token, obtained with authenticate() by proving
    possession of the session's private key.
    """

    def __init__(self, server_url: str = "http://localhost:8000",
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            server_url: Base URL of the chat server
            http_client: Preconfigured client, mainly for tests
        """
        self.server_url = server_url.rstrip("/")
        self.ws_url = self.server_url.replace("http", "ws", 1) + "/ws"
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url)
        self.token: Optional[str] = None

    def _auth_headers(self) -> dict:
        if not self.token:
            raise APIError(401, "Not authenticated")
        return {"Authorization": f"Bearer {self.token}"}

    @staticmethod
    def _check(response: httpx.Response):
        if response.status_code >= 400:
            raise APIError(response.status_code, _detail(response))

    async def find_user_by_username(self, username: str) -> Optional[UserRecord]:
        response = await self.http_client.get(
            "/api/users/by-username", params={"username": username}
        )
        if response.status_code == 404:
            return None
        self._check(response)
        return UserRecord.from_dict(response.json())

    async def get_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        response = await self.http_client.get(f"/api/users/{quote(user_id, safe='')}")
        if response.status_code == 404:
            return None
        self._check(response)
        return UserRecord.from_dict(response.json())

    async def insert_user(self, record: UserRecord) -> UserRecord:
        response = await self.http_client.post("/api/users", json={
            "username": record.username,
            "display_name": record.display_name,
            "public_key": record.public_key,
            "encrypted_private_key": record.encrypted_private_key,
        })
        if response.status_code == 409:
            raise UsernameTaken(record.username)
        self._check(response)
        return UserRecord.from_dict(response.json())

    async def search_users(self, query: str = "", exclude_id: Optional[str] = None) -> List[dict]:
        """List users whose username or display name contains query"""
        params = {"q": query}
        if exclude_id:
            params["exclude"] = exclude_id
        response = await self.http_client.get("/api/users", params=params)
        self._check(response)
        return response.json()["users"]

    async def authenticate(self, session: Session) -> str:
        """
        Obtain an access token for the session's user.

        The server encrypts a random challenge to the user's public key; only
        the holder of the private key can return it.

        Raises:
            DecryptionFailed: If the challenge was not encrypted to our key
        """
        response = await self.http_client.post(
            "/api/auth/challenge", json={"username": session.username}
        )
        self._check(response)
        challenge = response.json()

        answer = session.private_key.decrypt(b64decode(challenge["challenge"]))

        response = await self.http_client.post("/api/auth/token", json={
            "challenge_id": challenge["challenge_id"],
            "username": session.username,
            "response": b64encode(answer),
        })
        self._check(response)
        self.token = response.json()["access_token"]
        return self.token

    async def insert_message(self, sender_id: str, recipient_id: str,
                             ciphertext: str) -> MessageRecord:
        response = await self.http_client.post(
            "/api/messages",
            json={
                "sender_id": sender_id,
                "recipient_id": recipient_id,
                "encrypted_content": ciphertext,
            },
            headers=self._auth_headers(),
        )
        self._check(response)
        return MessageRecord.from_dict(response.json())

    async def list_messages(self, user_a: str, user_b: str) -> List[MessageRecord]:
        """Messages between user_a (the caller) and user_b, oldest first"""
        response = await self.http_client.get(
            f"/api/messages/{quote(user_b, safe='')}",
            params={"me": user_a},
            headers=self._auth_headers(),
        )
        self._check(response)
        return [MessageRecord.from_dict(item) for item in response.json()["messages"]]

    async def subscribe(self) -> AsyncIterator[MessageRecord]:
        """
        Yield messages addressed to us as the server pushes them.

        Runs until the connection closes.
        """
        async with websockets.connect(self.ws_url) as websocket:
            await websocket.send(json.dumps({"type": "auth", "token": self.token}))
            data = json.loads(await websocket.recv())
            if data.get("type") != "auth_success":
                raise APIError(401, data.get("message", "WebSocket authentication failed"))

            async for frame in websocket:
                data = json.loads(frame)
                if data.get("type") == "message":
                    yield MessageRecord.from_dict(data["message"])
                elif data.get("type") == "error":
                    logger.warning("Server error on push channel: %s", data.get("message"))

    async def aclose(self):
        await self.http_client.aclose()
