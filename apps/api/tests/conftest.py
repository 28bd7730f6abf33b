import uuid
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.auth_provider import AuthServiceError, AuthSession, AuthUser


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


class FakeAuthClient:
    """In-memory stand-in for the Supabase auth service."""

    def __init__(self):
        self.users: Dict[str, Dict[str, str]] = {}
        self.tokens: Dict[str, AuthUser] = {}

    def issue_token(self, user: AuthUser) -> str:
        token = f"token-{uuid.uuid4().hex}"
        self.tokens[token] = user
        return token

    async def register(self, email: str, password: str) -> AuthUser:
        if email in self.users:
            raise AuthServiceError("A user with this email address has already been registered", status_code=422)
        if len(password) < 6:
            raise AuthServiceError("Password should be at least 6 characters.", status_code=422)
        user_id = str(uuid.uuid4())
        self.users[email] = {"id": user_id, "password": password}
        return AuthUser(id=user_id, email=email)

    async def login(self, email: str, password: str) -> AuthSession:
        record = self.users.get(email)
        if not record or record["password"] != password:
            raise AuthServiceError("Invalid login credentials", status_code=400)
        user = AuthUser(id=record["id"], email=email)
        return AuthSession(user=user, access_token=self.issue_token(user), refresh_token=f"refresh-{user.id}")

    async def verify_token(self, token: str) -> AuthUser:
        user = self.tokens.get(token)
        if user is None:
            raise AuthServiceError("invalid JWT", status_code=401)
        return user

    async def list_users(self) -> List[AuthUser]:
        return [AuthUser(id=record["id"], email=email) for email, record in self.users.items()]

    async def find_user_by_email(self, email: str) -> Optional[AuthUser]:
        record = self.users.get(email)
        return AuthUser(id=record["id"], email=email) if record else None


@pytest.fixture
def fake_auth():
    return FakeAuthClient()
