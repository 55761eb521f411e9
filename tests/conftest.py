import os
from typing import Callable, Generator, Optional

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

import database as database_module
import models  # noqa: F401
from billing_fakes import WEBHOOK_SECRET, FakeGateway, RecordingDispatcher, RecordingNotifier
from core.billing_settings import BillingSettings, get_billing_settings
from database import Base
from models.account import Account
from services import retry_scheduler as retry_scheduler_module
from services import webhook_reconciler as webhook_reconciler_module
from services.payments.state_store import SqlStateStore, get_state_store
from services.plan_catalog_service import PlanCatalog, build_plan_catalog, load_plan_catalog
from services.retry_scheduler import RetryScheduler


_BILLING_ENV_KEYS = (
    "APP_ENV",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "BILLING_WEBHOOK_SKIP_VERIFICATION",
    "BILLING_REDIS_URL",
    "NOTIFICATION_SERVICE_URL",
    "PLAN_CATALOG_FILE",
    "APPLE_SHARED_SECRET",
    "GOOGLE_PLAY_PACKAGE_NAME",
    "GOOGLE_PLAY_ACCESS_TOKEN",
    "BILLING_SCHEDULE_FILE",
)


def _clear_caches() -> None:
    get_billing_settings.cache_clear()
    load_plan_catalog.cache_clear()
    get_state_store.cache_clear()


@pytest.fixture(autouse=True)
def _isolated_billing_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for key in _BILLING_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setattr(retry_scheduler_module, "_DEFAULT_SCHEDULER", None)
    monkeypatch.setattr(webhook_reconciler_module, "_DEFAULT_RECONCILER", None)
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture()
def engine(tmp_path, monkeypatch: pytest.MonkeyPatch) -> Generator[Engine, None, None]:
    test_engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=test_engine)
    factory = database_module.build_session_factory(test_engine)
    monkeypatch.setattr(database_module, "engine", test_engine)
    monkeypatch.setattr(database_module, "SessionLocal", factory)
    try:
        yield test_engine
    finally:
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Callable[[], Session]:
    return database_module.SessionLocal


@pytest.fixture()
def db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def make_account(db_session: Session) -> Callable[..., Account]:
    def _make(account_id: str = "acct-1", *, customer_id: Optional[str] = None, email: Optional[str] = None) -> Account:
        account = Account(
            id=account_id,
            email=email or f"{account_id}@example.com",
            full_name=account_id.title(),
            processor_customer_id=customer_id,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture()
def settings() -> BillingSettings:
    return BillingSettings(app_env="test", stripe_secret_key="sk_test", stripe_webhook_secret=WEBHOOK_SECRET)


@pytest.fixture()
def catalog(settings: BillingSettings) -> PlanCatalog:
    return build_plan_catalog(settings)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def state_store(session_factory: Callable[[], Session]) -> SqlStateStore:
    return SqlStateStore(session_factory)


@pytest.fixture()
def retry_scheduler(
    state_store: SqlStateStore,
    settings: BillingSettings,
    dispatcher: RecordingDispatcher,
    gateway: FakeGateway,
    session_factory: Callable[[], Session],
    notifier: RecordingNotifier,
) -> RetryScheduler:
    return RetryScheduler(
        store=state_store,
        settings=settings,
        dispatcher=dispatcher,
        gateway_factory=lambda: gateway,
        session_factory=session_factory,
        notifier=notifier,
    )
