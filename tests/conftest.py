import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# Key material and env must exist before any import that initializes the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
_key_path = Path(_test_tmp_dir) / "jwt_private.pem"
_key_path.write_bytes(
    rsa.generate_private_key(public_exponent=65537, key_size=2048).private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_PRIVATE_KEY_PATH", str(_key_path))
os.environ.setdefault("KEYS_DIR", str(Path(_test_tmp_dir) / "keys"))
os.environ.setdefault("RETENTION_SWEEP_ENABLED", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.config import Settings  # noqa: E402
from authkernel.service.audit import AuditRecorder  # noqa: E402
from authkernel.service.credentials import CredentialService  # noqa: E402
from authkernel.service.keys import KeyRing  # noqa: E402
from authkernel.service.lockout import LockoutGuard  # noqa: E402
from authkernel.service.passwords import PasswordService  # noqa: E402
from authkernel.service.retention import RetentionSweeper  # noqa: E402
from authkernel.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkernel.service.sessions import SessionManager  # noqa: E402
from authkernel.service.tokens import TokenService  # noqa: E402
from authkernel.service.validation_cache import ValidationCache  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402
from authkernel.storage.memory_cache import MemoryCache  # noqa: E402

_SIGNING_KEY = serialization.load_pem_private_key(_key_path.read_bytes(), password=None)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records every statement; plain SQL strings are kept verbatim."""

    def __init__(self, fail_on=None, error=None):
        self.statements = []
        self.params = []
        self.fail_on = fail_on
        self.error = error
        self.next_cursor = FakeCursor()

    async def execute(self, query, params=None):
        self.statements.append(query if isinstance(query, str) else "<composed>")
        self.params.append(params)
        if self.fail_on is not None and query == self.fail_on:
            raise self.error
        return self.next_cursor

    @property
    def control(self):
        return [s for s in self.statements if s != "<composed>"]

    def queries(self):
        """(sql, params) pairs excluding transaction control."""
        return [
            (stmt, params)
            for stmt, params in zip(self.statements, self.params)
            if stmt not in ("BEGIN", "COMMIT", "ROLLBACK")
        ]


class FakePool:
    """Hands out ``conn`` every time, or a new connection per unit with ``fresh_connections``."""

    def __init__(self, conn=None, getconn_error=None, fresh_connections=False):
        self.conn = conn or FakeConnection()
        self.getconn_error = getconn_error
        self.fresh_connections = fresh_connections
        self.connections = []
        self.checked_out = 0
        self.returned = []

    async def getconn(self, timeout=None):
        if self.getconn_error is not None:
            raise self.getconn_error
        self.checked_out += 1
        conn = FakeConnection() if self.fresh_connections else self.conn
        self.connections.append(conn)
        return conn

    async def putconn(self, conn):
        self.returned.append(conn)


class FakeClock:
    """Monotonic clock tests can move forward by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_password_service() -> PasswordService:
    return PasswordService(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


def build_services(*, store=None, cache=None, settings=None, key=None):
    """Wire the full service graph around the given store and cache."""
    settings = settings or Settings(jwt_private_key_path=str(_key_path))
    store = store if store is not None else MemoryStore()
    keys = KeyRing(key or _SIGNING_KEY)
    tokens = TokenService(keys, settings)
    lockout = LockoutGuard.from_settings(cache, settings)
    validation_cache = ValidationCache(cache, settings.validation_cache_ttl_seconds)
    audit = AuditRecorder(store)
    passwords = fast_password_service()
    sessions = SessionManager(
        store, tokens, lockout, validation_cache, audit, passwords, settings
    )
    credentials = CredentialService(store, passwords, sessions, audit, settings)
    sweeper = RetentionSweeper(store, sessions, settings)
    return SimpleNamespace(
        settings=settings,
        store=store,
        cache=cache,
        keys=keys,
        tokens=tokens,
        lockout=lockout,
        validation_cache=validation_cache,
        audit=audit,
        passwords=passwords,
        sessions=sessions,
        credentials=credentials,
        sweeper=sweeper,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def services(store, cache):
    return build_services(store=store, cache=cache)


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
