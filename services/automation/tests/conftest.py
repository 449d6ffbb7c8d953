import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

TESTS_DIR = Path(__file__).resolve().parent
SERVICE_DIR = Path(__file__).resolve().parents[1]
ROOT_DIR = SERVICE_DIR.parent.parent

service_path = str(SERVICE_DIR)
shared_path = str(ROOT_DIR / "services")
for path in (str(TESTS_DIR), service_path, shared_path):
    if path in sys.path:
        sys.path.remove(path)
    sys.path.insert(0, path)

from auth_helpers import ALGORITHM, SECRET_KEY  # noqa: E402

for module_name in list(sys.modules):
    if module_name == "app" or module_name.startswith("app."):
        sys.modules.pop(module_name)

# app and tests must agree on the signing key
os.environ.setdefault("SECRET_KEY", SECRET_KEY)
os.environ.setdefault("JWT_ALGORITHM", ALGORITHM)

os.environ.setdefault("AUTOMATION_DATABASE_URL", f"sqlite:///{SERVICE_DIR / 'test_automation.db'}")
os.environ["REDIS_URL"] = ""
os.environ["AUTOMATION_SCHEDULER_ENABLED"] = "false"

from app.main import app  # noqa: E402
from app.core.database import Base, SessionLocal, engine  # noqa: E402
from app.services.notifications import NotificationResult  # noqa: E402


@dataclass
class FakeGateway:
    """Records every notification instead of sending it."""

    email_result: NotificationResult = field(default_factory=NotificationResult.ok)
    sms_result: NotificationResult = field(default_factory=NotificationResult.ok)
    email_error: Optional[Exception] = None
    emails: List[Dict[str, Any]] = field(default_factory=list)
    sms: List[Dict[str, Any]] = field(default_factory=list)
    alerts: List[Dict[str, Any]] = field(default_factory=list)

    async def send_email(self, tenant_id, to, subject, html, text=None):
        if self.email_error is not None:
            raise self.email_error
        self.emails.append({"tenant_id": tenant_id, "to": to, "subject": subject, "html": html})
        return self.email_result

    async def send_sms(self, tenant_id, to, body):
        self.sms.append({"tenant_id": tenant_id, "to": to, "body": body})
        return self.sms_result

    async def create_alert(self, tenant_id, kind, message, reference=None):
        self.alerts.append({"tenant_id": tenant_id, "kind": kind, "message": message, "reference": reference})
        return NotificationResult.ok()


@pytest.fixture(autouse=True)
def prepare_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
