import os
import tempfile
from pathlib import Path

# Settings are read at import time, so the environment must be in place first.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="wetools-auth-tests-"))
os.environ["MODE"] = "testing"
os.environ["ASYNC_DATABASE_URI"] = f"sqlite+aiosqlite:///{_TMP_DIR / 'test.db'}"
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["CREDENTIAL_SECRET"] = "test-credential-secret"
os.environ["QQ_APP_ID"] = "101000000"
os.environ["QQ_APP_KEY"] = "test-app-key"

import asyncio  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import wetools_auth.models  # noqa: E402,F401
from wetools_auth.core.client_storage import ClientStorage, MemoryStore  # noqa: E402
from wetools_auth.core.qq_connect import ProviderConfig  # noqa: E402
from wetools_auth.core.sdk_loader import SdkLoader  # noqa: E402
from wetools_auth.core.security import hash_password, synthetic_email  # noqa: E402
from wetools_auth.db.database import AsyncSessionLocal, engine  # noqa: E402
from wetools_auth.models.oauth_account import OAuthAccount  # noqa: E402
from wetools_auth.models.user import User  # noqa: E402

OPEN_ID = "8F3A1C0B2D4E6F708192A3B4C5D6E7F8"

QQ_USER_INFO = {
    "ret": 0,
    "msg": "",
    "openId": OPEN_ID,
    "nickname": "小明",
    "gender": "男",
    "figureurl": "http://qzapp.qlogo.cn/qzapp/101000000/30",
    "figureurl_1": "http://qzapp.qlogo.cn/qzapp/101000000/50",
    "figureurl_2": "http://qzapp.qlogo.cn/qzapp/101000000/100",
    "figureurl_qq_1": "http://thirdqq.qlogo.cn/g?s=40",
    "figureurl_qq_2": "http://thirdqq.qlogo.cn/g?s=100",
}


class FakeSdkClient:
    """In-memory ``ProviderSdkClient`` with knobs for the failure modes."""

    def __init__(self, info=None, *, fail_load=False, ready_after_load=True, delay=0.0, load_error=None, info_error=None):
        self.info = dict(QQ_USER_INFO) if info is None else info
        self.fail_load = fail_load
        self.load_error = load_error
        self.info_error = info_error
        self.ready_after_load = ready_after_load
        self.delay = delay
        self.load_calls = 0
        self.info_calls = 0
        self.closed = False
        self._ready = False

    def is_ready(self) -> bool:
        return self._ready

    async def load(self) -> None:
        self.load_calls += 1
        await asyncio.sleep(0)
        if self.load_error is not None:
            raise self.load_error
        if self.fail_load:
            raise httpx.ConnectError("connection refused")
        self._ready = self.ready_after_load

    def login(self, state: str) -> str:
        return f"https://graph.qq.test/oauth2.0/authorize?state={state}"

    async def get_user_info(self, code: str) -> dict:
        self.info_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.info_error is not None:
            raise self.info_error
        return dict(self.info) if isinstance(self.info, dict) else self.info

    async def aclose(self) -> None:
        self.closed = True


def make_loader(client: FakeSdkClient, *, blocked: bool = False, refused: bool = False) -> SdkLoader:
    """SdkLoader wired to ``client`` and to a probe that answers like a content blocker when asked."""

    def probe(request: httpx.Request) -> httpx.Response:
        if refused:
            raise httpx.ConnectError("probe refused")
        return httpx.Response(200, content=b"" if blocked else b"/* adsbox */")

    return SdkLoader(
        client_factory=lambda config: client,
        probe_transport=httpx.MockTransport(probe),
        poll_attempts=2,
        poll_interval=0.01,
    )


def memory_storage(session=None, cookies=None) -> ClientStorage:
    return ClientStorage([MemoryStore("session", session), MemoryStore("cookies", cookies)])


@pytest.fixture
def provider_config():
    return ProviderConfig(
        app_id="101000000",
        app_key="test-app-key",
        redirect_uri="https://wetools.test/auth/qq-callback",
        scope="get_user_info",
        graph_base="https://graph.qq.test",
        sdk_url="https://connect.qq.test/qc_jssdk.js",
        probe_url="https://connect.qq.test/ads/adsbox.js?class=ad-banner",
    )


@pytest.fixture
def sdk_client():
    return FakeSdkClient()


@pytest.fixture
def storage():
    return memory_storage()


@pytest.fixture
async def schema():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
async def db(schema):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def make_user(db):
    """Insert a QQ-linked user whose stored credential is ``password``."""

    async def _make(external_id: str = OPEN_ID, password: str | None = None, *, linked: bool = True) -> User:
        email = synthetic_email("qq", external_id)
        user = User(
            email=email,
            hashed_password=hash_password(password if password is not None else external_id),
            display_name="Existing user",
            user_metadata={"provider": "qq", "external_id": external_id, "identity_trust": "verified"},
        )
        db.add(user)
        if linked:
            db.add(OAuthAccount(user_id=user.id, provider="qq", provider_user_id=external_id))
        await db.commit()
        return user

    return _make
