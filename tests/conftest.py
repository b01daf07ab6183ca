import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_BASE_URL", "https://gatekeep.test")
# The process-local cache keeps tests isolated from whatever Redis is around.
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeep.config import SigningKeys, generate_rsa_pair  # noqa: E402
from gatekeep.service.auth import AuthService  # noqa: E402
from gatekeep.service.authenticator import RequestAuthenticator  # noqa: E402
from gatekeep.service.codes import OneTimeCodes  # noqa: E402
from gatekeep.service.email import LogMailer  # noqa: E402
from gatekeep.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatekeep.service.tokens import TokenAuthority  # noqa: E402
from gatekeep.service.user_cache import CachedUserDirectory  # noqa: E402
from gatekeep.storage.memory import MemoryStore  # noqa: E402
from gatekeep.storage.memory_cache import MemoryCache  # noqa: E402
from gatekeep.storage.models import User  # noqa: E402

ISSUER = "https://gatekeep.test"
ACCESS_TTL = 900
REFRESH_TTL = 3600
CACHE_TTL = 600
VERIFICATION_TTL = 86400
RESET_TTL = 3600


class FakeClock:
    """Settable clock shared by the token authority and the memory cache."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingDirectory:
    """Wraps a MemoryStore and counts the lookups that reach it."""

    def __init__(self, store: MemoryStore):
        self.store = store
        self.calls = {"get_user": 0, "get_user_by_email": 0}

    def get_user(self, user_id):
        self.calls["get_user"] += 1
        return self.store.get_user(user_id)

    def get_user_by_email(self, email):
        self.calls["get_user_by_email"] += 1
        return self.store.get_user_by_email(email)

    def __getattr__(self, name):
        return getattr(self.store, name)


def make_user(store: MemoryStore, email: str = "foo@bar.com", role: str = "user", **kwargs) -> User:
    return store.create_user(
        User(
            email=email,
            name=kwargs.pop("name", "Foo Bar"),
            password_hash=kwargs.pop("password_hash", "$argon2id$placeholder"),
            role=store.get_role_by_name(role),
            **kwargs,
        )
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def signing_keys():
    private_pem, public_pem = generate_rsa_pair()
    return SigningKeys(private_key=private_pem, public_key=public_pem, algorithm="RS256")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def directory(store):
    return CountingDirectory(store)


@pytest.fixture
def authority(store, kv, signing_keys, clock):
    return TokenAuthority(
        store,
        kv,
        signing_keys,
        issuer=ISSUER,
        audience=ISSUER,
        access_token_ttl=ACCESS_TTL,
        refresh_token_ttl=REFRESH_TTL,
        clock=clock,
    )


@pytest.fixture
def users(directory, kv):
    return CachedUserDirectory(directory, kv, ttl=CACHE_TTL)


@pytest.fixture
def authenticator(authority, users):
    return RequestAuthenticator(authority, users)


@pytest.fixture
def codes(kv):
    return OneTimeCodes(
        kv, verification_ttl=VERIFICATION_TTL, reset_ttl=RESET_TTL, max_reset_attempts=3
    )


@pytest.fixture
def mailer():
    return LogMailer(keep_outbox=True)


@pytest.fixture
def auth_service(users, authority, codes, mailer):
    return AuthService(users, authority, codes=codes, mailer=mailer)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
