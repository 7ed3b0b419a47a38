"""Shared pytest fixtures for s3emu tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
gauges in the global prometheus_client registry).

The lifespan hook does not run under ASGITransport, so each test swaps
fresh, initialized components into ``app.state`` instead.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from s3emu.auth import RequestAuthenticator
from s3emu.call_log import CallLog
from s3emu.config import AuthConfig, S3EmuConfig, ServerConfig, StorageConfig
from s3emu.multipart import MultipartManager
from s3emu.server import create_app
from s3emu.storage import ObjectStore

TEST_ACCESS_KEY = "AKIDTEST"
TEST_SECRET_KEY = "test-secret"


@pytest.fixture(scope="session")
def config(tmp_path_factory) -> S3EmuConfig:
    """Create a test S3EmuConfig with auth disabled.

    Tests that sign requests use the ``auth_client`` fixture, which
    switches authentication on for the duration of a test.
    """
    root = tmp_path_factory.mktemp("s3emu")
    return S3EmuConfig(
        server=ServerConfig(host="127.0.0.1", port=9444, legacy_prefix="/s3"),
        auth=AuthConfig(access_key=TEST_ACCESS_KEY, secret_key=TEST_SECRET_KEY, enabled=False),
        storage=StorageConfig(
            base_dir=str(root / "s3"), multipart_dir=str(root / "multipart")
        ),
    )


@pytest.fixture(scope="session")
def app(config: S3EmuConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
def store(tmp_path) -> ObjectStore:
    """A fresh, initialized object store under tmp_path."""
    s = ObjectStore(tmp_path / "s3")
    s.init()
    return s


@pytest.fixture
def multipart(tmp_path) -> MultipartManager:
    """A fresh multipart manager under tmp_path."""
    m = MultipartManager(tmp_path / "multipart")
    m.init()
    return m


def _swap_state(app, **values):
    old = {name: getattr(app.state, name) for name in values}
    for name, value in values.items():
        setattr(app.state, name, value)
    return old


@pytest.fixture
async def client(app, config, store, multipart) -> AsyncClient:
    """An async test client whose app uses fresh per-test components."""
    old = _swap_state(
        app,
        config=config,
        store=store,
        multipart=multipart,
        call_log=CallLog(),
        authenticator=RequestAuthenticator(TEST_SECRET_KEY, legacy_prefix="/s3"),
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    _swap_state(app, **old)


@pytest.fixture
def auth_config(config: S3EmuConfig) -> S3EmuConfig:
    """The test config with signature checks switched on."""
    return config.model_copy(
        update={
            "auth": AuthConfig(
                access_key=TEST_ACCESS_KEY, secret_key=TEST_SECRET_KEY, enabled=True
            )
        }
    )


@pytest.fixture
async def auth_client(app, auth_config, store, multipart) -> AsyncClient:
    """Like ``client``, but requests must be signed or target public buckets."""
    old = _swap_state(
        app,
        config=auth_config,
        store=store,
        multipart=multipart,
        call_log=CallLog(),
        authenticator=RequestAuthenticator(TEST_SECRET_KEY, legacy_prefix="/s3"),
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    _swap_state(app, **old)
