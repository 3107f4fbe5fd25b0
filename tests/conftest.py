import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantgate_test_")
os.environ.setdefault("DATA_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "default-signing-secret-for-tests-only-0123456789")
os.environ.setdefault("SUPERUSER_JWT_SECRET", "superuser-signing-secret-for-tests-only-987654")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantgate.config import Settings  # noqa: E402
from tenantgate.service.email import EmailService  # noqa: E402
from tenantgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantgate.storage.memory import MemoryStore  # noqa: E402
from tenantgate.storage.models import Role, SigningConfig, Tenant  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path),
        jwt_secret="default-signing-secret-for-tests-only-0123456789",
        superuser_jwt_secret="superuser-signing-secret-for-tests-only-987654",
        test_mode=True,
    )


@pytest.fixture
def store():
    return MemoryStore()


class RecordingEmailService(EmailService):
    """EmailService that keeps rendered messages instead of delivering them."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[dict] = []
        self.fail = False

    def _send_email(self, to_email, subject, html_body, text_body=None) -> bool:
        if self.fail:
            return False
        self.sent.append({"to": to_email, "subject": subject, "text": text_body})
        return True

    def to(self, email: str) -> list[dict]:
        return [message for message in self.sent if message["to"] == email]


@pytest.fixture
def mailbox():
    return RecordingEmailService()


@pytest.fixture
def make_tenant(store):
    """Create and persist a tenant; keyword arguments override Tenant fields."""
    counter = {"n": 0}

    def _make(tenant_id: str = "acme", **overrides) -> Tenant:
        counter["n"] += 1
        fields = {
            "id": tenant_id,
            "name": tenant_id.title(),
            "api_key": f"exy_{tenant_id}_key_{counter['n']}",
            "signing": SigningConfig(
                algorithm="HS256", secret=f"{tenant_id}-signing-secret-0123456789abcdef"
            ),
            "roles": [
                Role(name="User", slug="user", is_default=True),
                Role(name="Admin", slug="admin", permissions=["users:manage"], show_on_signup=False),
                Role(name="Editor", slug="editor", permissions=["content:write"]),
            ],
        }
        fields.update(overrides)
        return store.create_tenant(Tenant(**fields))

    return _make


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
