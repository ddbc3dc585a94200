# gigcoins/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from gigcoins.core.config import EconomyConfig, Settings  # noqa: E402
from gigcoins.core.database import create_all_tables, drop_all_tables, init_engine  # noqa: E402
from gigcoins.features.billing.service import BillingService  # noqa: E402
from gigcoins.tests.fakes import FakeGateway, RecordingNotifier  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path):
    """
    Fresh SQLite database per test.

    A file database (not :memory:) so that worker threads in the
    concurrency tests get their own connections.
    """
    engine = init_engine(f"sqlite:///{tmp_path / 'gigcoins.db'}")
    create_all_tables()
    yield engine
    drop_all_tables()
    engine.dispose()


@pytest.fixture
def economy():
    return EconomyConfig()


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def billing(gateway, economy, notifier):
    return BillingService(gateway, economy, notifier)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        ENV="test",
        DATABASE_URL=f"sqlite:///{tmp_path / 'gigcoins.db'}",
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET="whsec_dummy",
        ADMIN_KEY="admin-secret",
        _env_file=None,
    )


@pytest.fixture
def client(test_settings, gateway, notifier):
    from fastapi.testclient import TestClient
    from gigcoins.main import create_app

    app = create_app(test_settings, gateway=gateway, notifier=notifier, init_db=False)
    with TestClient(app) as test_client:
        yield test_client
