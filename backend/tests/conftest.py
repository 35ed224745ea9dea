# tests/conftest.py - Shared test fixtures
import os
import re
import asyncio

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"

from models import Base, iso_now
from auth import AuthService
from database import create_engine_for, create_session_factory
from errors import DeliveryError
from mailer import Mailer
from presence import Connection, board_room
from services import build_services
from main import app


# ============================================================
# TEST DOUBLES
# ============================================================

class RecordingMailer(Mailer):
    """Mailer that keeps outgoing messages in memory."""

    def __init__(self):
        super().__init__(host="")
        self.sent = []
        self.fail = False

    async def send(self, email):
        if self.fail:
            raise DeliveryError("SMTP unavailable", {"to": email.to})
        self.sent.append(email)

    def last_code(self, to: str) -> str:
        for email in reversed(self.sent):
            if email.to == to:
                return re.search(r"\b(\d{6})\b", email.body).group(1)
        raise AssertionError(f"No email sent to {to}")


class FakeSocket:
    """Stands in for a WebSocket: records every JSON message sent to it."""

    def __init__(self, fail: bool = False):
        self.messages = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(message)

    def of_type(self, msg_type: str) -> list:
        return [m for m in self.messages if m["type"] == msg_type]

    def types(self) -> list:
        return [m["type"] for m in self.messages]


def connect(services, user: dict, *board_ids: str):
    """Register a fake live connection for ``user``, joined to ``board_ids``."""
    socket = FakeSocket()
    connection = Connection(socket, user["id"], user.get("email", ""))
    services.registry.register(connection)
    for board_id in board_ids:
        services.registry.join(connection, board_room(board_id))
    return connection, socket


# ============================================================
# DATABASE & SERVICES
# ============================================================

@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_engine_for(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def services(db_engine):
    svc = build_services(create_session_factory(db_engine), mailer=RecordingMailer())
    app.state.services = svc
    yield svc
    app.state.services = None


@pytest.fixture
def store(services):
    return services.store


@pytest_asyncio.fixture(scope="function")
async def client(services):
    """HTTP test client bound to the per-test services"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ============================================================
# USERS & BOARDS
# ============================================================

async def make_user(store, email: str, display_name: str = "") -> dict:
    now = iso_now()
    user_id = store.push_id("users")
    return await store.set(f"users/{user_id}", {
        "email": email,
        "displayName": display_name,
        "photoURL": None,
        "emailVerified": True,
        "githubAccessToken": None,
        "githubProfile": None,
        "createdAt": now,
        "updatedAt": now,
    })


async def make_board(store, owner: dict, name: str = "Launch Plan", members=None) -> dict:
    now = iso_now()
    board_id = store.push_id("boards")
    return await store.set(f"boards/{board_id}", {
        "name": name,
        "description": "",
        "ownerId": owner["id"],
        "members": [owner["id"]] + [m["id"] for m in (members or [])],
        "createdAt": now,
        "updatedAt": now,
    })


@pytest_asyncio.fixture
async def owner(store):
    return await make_user(store, "owner@taskboard.dev", "Olivia Owner")


@pytest_asyncio.fixture
async def member(store):
    return await make_user(store, "member@taskboard.dev", "Max Member")


@pytest_asyncio.fixture
async def outsider(store):
    return await make_user(store, "outsider@taskboard.dev", "")


@pytest_asyncio.fixture
async def board(store, owner):
    return await make_board(store, owner)


@pytest_asyncio.fixture
async def shared_board(store, owner, member):
    return await make_board(store, owner, name="Shared", members=[member])


def get_auth_headers(user: dict) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.token_claims(user))
    return {"Authorization": f"Bearer {token}"}


def run(coro):
    """Run a coroutine from a synchronous (TestClient) test."""
    return asyncio.run(coro)
