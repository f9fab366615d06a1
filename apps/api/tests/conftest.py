import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import apiary_api.models  # noqa: E402,F401
from apiary_api.app import create_app  # noqa: E402
from apiary_api.db.base import Base  # noqa: E402
from apiary_api.db.session import get_session  # noqa: E402
from apiary_api.domain.errors import DownstreamSideEffectFailed  # noqa: E402
from apiary_api.services.billing import StripeHostedSession  # noqa: E402
from apiary_api.services.documents import CertificateIssuer, CertificateRecord  # noqa: E402
from apiary_api.services.notifications import NotificationContent  # noqa: E402


class StubRenderer:
    """Renders a fixed PDF body and remembers every record."""

    def __init__(self, *, fail: bool = False) -> None:
        self.records: list[CertificateRecord] = []
        self.fail = fail

    async def render(self, record: CertificateRecord) -> bytes:
        if self.fail:
            raise RuntimeError("renderer offline")
        self.records.append(record)
        return b"%PDF-1.7 stub"


class MemoryObjectStore:
    """Object store keeping payloads in a dict keyed by locator."""

    def __init__(self, *, fail_writes: bool = False) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_writes = fail_writes

    async def store(self, payload: bytes, key: str, *, content_type: str = "application/octet-stream") -> str:
        if self.fail_writes:
            raise DownstreamSideEffectFailed("store", "bucket unavailable")
        locator = f"memory://{key}"
        self.objects[locator] = payload
        return locator

    async def fetch(self, locator: str) -> bytes:
        return self.objects[locator]


class RecordingNotifier:
    """Notifier collecting deliveries; ``delivered`` controls the return value."""

    def __init__(self, *, delivered: bool = True) -> None:
        self.sent: list[tuple[str, NotificationContent]] = []
        self.delivered = delivered

    async def notify(self, address: str, content: NotificationContent) -> bool:
        self.sent.append((address, content))
        return self.delivered


class StubStripeProvider:
    """Test double for StripeBillingProvider interactions."""

    def __init__(self, events: list[tuple[str, dict[str, Any]]] | None = None) -> None:
        self.webhook_secret = "whsec_test"
        self.events = list(events or [])
        self.created: list[dict[str, Any]] = []
        self.fail_listing = False

    async def create_checkout_session(self, **kwargs: Any) -> StripeHostedSession:  # type: ignore[override]
        self.created.append(kwargs)
        session_id = f"cs_test_{len(self.created)}"
        return StripeHostedSession(
            session_id=session_id,
            url=f"https://checkout.test/{session_id}",
            expires_at=datetime.now(timezone.utc),
        )

    async def iter_completed_checkout_sessions(self, *, created_gte: datetime, page_size: int = 100):
        for event_id, checkout in self.events:
            yield event_id, checkout
        if self.fail_listing:
            raise RuntimeError("stripe listing unavailable")


def paid_checkout(
    entity_type: str,
    entity_id: object,
    *,
    payment_intent: str = "pi_test",
    session_id: str = "cs_test",
    modification_index: int | None = None,
    payment_status: str = "paid",
) -> dict[str, Any]:
    metadata = {"entityType": entity_type, "entityId": str(entity_id), "ownerId": "U1", "organization": "SAR"}
    if modification_index is not None:
        metadata["modificationIndex"] = str(modification_index)
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "payment_intent": payment_intent,
        "metadata": metadata,
    }


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def renderer() -> StubRenderer:
    return StubRenderer()


@pytest.fixture
def object_store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def certificates(renderer: StubRenderer, object_store: MemoryObjectStore) -> CertificateIssuer:
    return CertificateIssuer(renderer, object_store)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def stripe_provider() -> StubStripeProvider:
    return StubStripeProvider()


@pytest.fixture
def checkout_payload():
    return paid_checkout
