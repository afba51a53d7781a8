"""
FastAPI server for end-to-end encrypted chat application.

This server:
- Stores user records: public key and password-wrapped private key
- Stores ciphertext messages and lists a conversation on request
- Pushes newly stored messages to the recipient over WebSocket
- Issues access tokens against proof of private key possession
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from chatcrypto import (
    AsymmetricKeyManager,
    CryptoError,
    DecodeError,
    MalformedKeyMaterial,
    WrappedSecret,
    b64decode,
)

from .auth import ChallengeStore, Token, create_access_token, verify_token
from .config import DEFAULT_SECRET_KEY, ServerSettings
from .database import Database

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    display_name: str = Field(min_length=1, max_length=100)
    public_key: str
    encrypted_private_key: str


class UserOut(BaseModel):
    id: str
    username: str
    display_name: str
    public_key: str
    encrypted_private_key: str


class ChallengeRequest(BaseModel):
    username: str


class ChallengeResponse(BaseModel):
    challenge_id: str
    username: str
    response: str


class MessageCreate(BaseModel):
    sender_id: Optional[str] = None
    recipient_id: str
    encrypted_content: str = Field(min_length=1)


class MessageOut(BaseModel):
    id: int
    sender_id: str
    recipient_id: str
    encrypted_content: str
    created_at: str


# WebSocket connection manager
class ConnectionManager:
    """Manages active WebSocket connections, keyed by user id"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    def register(self, user_id: str, websocket: WebSocket):
        self.active_connections[user_id] = websocket

    def disconnect(self, user_id: str, websocket: WebSocket):
        """Remove a WebSocket connection if it is still the current one"""
        if self.active_connections.get(user_id) is websocket:
            del self.active_connections[user_id]

    async def send_message(self, user_id: str, message: dict):
        """Send a message to a specific user, if connected"""
        websocket = self.active_connections.get(user_id)
        if websocket is None:
            return
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("Dropping push to %s: %s", user_id, e)
            self.disconnect(user_id, websocket)


bearer = HTTPBearer(auto_error=False)
router = APIRouter(prefix="/api")


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


def get_settings(request: Request) -> ServerSettings:
    return request.app.state.settings


def current_user_id(request: Request,
                    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> str:
    token = credentials.credentials if credentials else None
    user_id = verify_token(token, request.app.state.settings)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user_id


@router.post("/users", response_model=UserOut, status_code=201)
async def create_user(user_data: UserCreate, request: Request, db: Database = Depends(get_db)):
    """
    Register a new user.

    The client generates the key pair and wraps the private key itself; both
    arrive here as opaque text and are only checked for well-formedness.
    """
    key_manager: AsymmetricKeyManager = request.app.state.key_manager
    try:
        key_manager.import_public(user_data.public_key)
        WrappedSecret.from_text(user_data.encrypted_private_key)
    except MalformedKeyMaterial as e:
        raise HTTPException(status_code=422, detail=str(e))
    except CryptoError:
        raise HTTPException(status_code=422, detail="Malformed wrapped private key")

    user = await db.create_user(
        username=user_data.username,
        display_name=user_data.display_name,
        public_key=user_data.public_key,
        encrypted_private_key=user_data.encrypted_private_key,
    )
    if not user:
        raise HTTPException(status_code=409, detail="Username already taken")

    logger.info("Created user %s", user.id)
    return user.to_dict()


@router.get("/users/by-username", response_model=UserOut)
async def get_user_by_username(username: str = Query(min_length=1), db: Database = Depends(get_db)):
    user = await db.get_user_by_username(username)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user.to_dict()


@router.get("/users/{user_id}", response_model=UserOut)
async def get_user(user_id: str, db: Database = Depends(get_db)):
    user = await db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user.to_dict()


@router.get("/users")
async def list_users(q: str = "", exclude: Optional[str] = None, db: Database = Depends(get_db)):
    """List users, optionally filtered by a search string"""
    users = await db.search_users(q, exclude_id=exclude)
    return {"users": [user.to_dict(include_keys=False) for user in users]}


@router.post("/auth/challenge")
async def issue_challenge(body: ChallengeRequest, request: Request, db: Database = Depends(get_db)):
    """Encrypt a fresh random challenge to the user's public key"""
    user = await db.get_user_by_username(body.username)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    challenges: ChallengeStore = request.app.state.challenges
    challenge_id, challenge = challenges.issue(user.username, user.public_key)
    return {"challenge_id": challenge_id, "challenge": challenge}


@router.post("/auth/token", response_model=Token)
async def issue_token(body: ChallengeResponse, request: Request,
                      db: Database = Depends(get_db),
                      settings: ServerSettings = Depends(get_settings)):
    """Exchange a decrypted challenge for an access token"""
    user = await db.get_user_by_username(body.username)
    try:
        answer = b64decode(body.response)
    except DecodeError:
        answer = b""

    challenges: ChallengeStore = request.app.state.challenges
    if not user or not challenges.redeem(body.challenge_id, body.username, answer):
        raise HTTPException(status_code=401, detail="Challenge failed")

    return Token(
        access_token=create_access_token({"sub": user.id}, settings),
        token_type="bearer",
        user_id=user.id,
        username=user.username,
    )


@router.post("/messages", response_model=MessageOut, status_code=201)
async def send_message(body: MessageCreate,
                       user_id: str = Depends(current_user_id),
                       db: Database = Depends(get_db),
                       manager: ConnectionManager = Depends(get_manager),
                       settings: ServerSettings = Depends(get_settings)):
    """Store a ciphertext and push it to the recipient if connected"""
    if body.sender_id is not None and body.sender_id != user_id:
        raise HTTPException(status_code=403, detail="Not authorized")
    if len(body.encrypted_content) > settings.max_ciphertext_length:
        raise HTTPException(status_code=413, detail="Message too large")
    if not await db.get_user(body.recipient_id):
        raise HTTPException(status_code=404, detail="Recipient not found")

    message = await db.insert_message(user_id, body.recipient_id, body.encrypted_content)
    payload = message.to_dict()
    await manager.send_message(body.recipient_id, {"type": "message", "message": payload})
    return payload


@router.get("/messages/{peer_id}")
async def list_messages(peer_id: str, me: Optional[str] = Query(default=None),
                        user_id: str = Depends(current_user_id),
                        db: Database = Depends(get_db)):
    """Conversation between the caller and peer_id, oldest first"""
    if me is not None and me != user_id:
        raise HTTPException(status_code=403, detail="Not authorized")
    messages = await db.list_messages(user_id, peer_id)
    return {"messages": [message.to_dict() for message in messages]}


async def _receive_frame(websocket: WebSocket) -> Optional[dict]:
    """Next client frame as a dict, or None after replying with an error frame"""
    try:
        data = await websocket.receive_json()
    except (ValueError, KeyError):
        await websocket.send_json({"type": "error", "message": "Malformed frame"})
        return None
    if not isinstance(data, dict):
        await websocket.send_json({"type": "error", "message": "Malformed frame"})
        return None
    return data


async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for message push.

    Protocol:
    1. Client sends: {"type": "auth", "token": "jwt_token"}
    2. Server verifies and responds: {"type": "auth_success", "user_id": "..."}
    3. Server pushes: {"type": "message", "message": {...}} for each new message
       addressed to the client
    4. Client may send {"type": "ping"}; server answers {"type": "pong"}

    Frames that are not JSON objects get an error frame in reply.
    """
    manager: ConnectionManager = websocket.app.state.manager
    settings: ServerSettings = websocket.app.state.settings
    user_id = None

    await websocket.accept()
    try:
        auth_data = await _receive_frame(websocket)
        if auth_data is None:
            await websocket.close()
            return
        if auth_data.get("type") != "auth":
            await websocket.send_json({"type": "error", "message": "Authentication required"})
            await websocket.close()
            return

        token = auth_data.get("token")
        user_id = verify_token(token if isinstance(token, str) else None, settings)
        if not user_id:
            await websocket.send_json({"type": "error", "message": "Invalid token"})
            await websocket.close()
            return

        manager.register(user_id, websocket)
        await websocket.send_json({"type": "auth_success", "user_id": user_id})

        while True:
            data = await _receive_frame(websocket)
            if data is None:
                continue
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": "Unknown frame type"})

    except WebSocketDisconnect:
        pass
    finally:
        if user_id:
            manager.disconnect(user_id, websocket)


def create_app(settings: Optional[ServerSettings] = None) -> FastAPI:
    """Build the application with its own database and connection registry"""
    settings = settings or ServerSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await app.state.db.create_tables()
        if settings.secret_key == DEFAULT_SECRET_KEY:
            logger.warning("Using the default token signing key; set CIPHERCHAT_SERVER_SECRET_KEY")
        logger.info("Database initialized")
        yield
        await app.state.db.dispose()
        logger.info("Server shutting down")

    app = FastAPI(
        title="Encrypted Chat Server",
        description="Storage and relay for end-to-end encrypted direct messages",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.db = Database(settings.database_url)
    app.state.manager = ConnectionManager()
    app.state.key_manager = AsymmetricKeyManager()
    app.state.challenges = ChallengeStore(settings.challenge_ttl_seconds, app.state.key_manager)

    app.include_router(router)
    app.add_api_websocket_route("/ws", websocket_endpoint)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
