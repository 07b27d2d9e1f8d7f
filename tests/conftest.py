"""Shared fixtures for the sync engine tests.

Provides:
- In-memory aiosqlite engine with every OPMS and sync table created
- session_factory matching the application's get_session() shape
- Wired store, detector and repository
- A seeded catalog (vendor, mapping, product, priced items)
- FakeAdapter: in-memory RemoteAdapter with scriptable failures
- Settings with operator and webhook secrets configured
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from src.app.config import get_settings
from src.app.core.database import Base
from src.app.opms import models as opms_models
from src.app.opms.repository import OpmsRepository
from src.app.sync import models as sync_models  # noqa: F401
from src.app.sync.adapter import RemoteAdapter, RemoteNotFoundError
from src.app.sync.detector import ChangeDetector
from src.app.sync.store import SyncQueueStore

SYNC_ACTOR_ID = 1
OPMS_USER_ID = 42

ADMIN_API_KEY = "test-admin-key"
WEBHOOK_SECRET = "test-webhook-secret"


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    db_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def store(session_factory) -> SyncQueueStore:
    return SyncQueueStore(session_factory, default_max_retries=3)


@pytest.fixture
def detector(store, session_factory) -> ChangeDetector:
    return ChangeDetector(store, session_factory, sync_actor_id=SYNC_ACTOR_ID)


@pytest.fixture
def repository(session_factory, detector) -> OpmsRepository:
    return OpmsRepository(session_factory, detector)


# ── Catalog Seed ─────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def catalog(session_factory) -> dict[str, Any]:
    """One mapped vendor, one product with pricing, two live items and one archived.

    Rows are inserted directly (not through the repository) so no jobs exist yet.
    """
    async for session in session_factory():
        vendor = opms_models.VendorModel(name="Maharam", active=True, archived=False)
        session.add(vendor)
        await session.flush()

        session.add(
            opms_models.VendorMappingModel(
                opms_vendor_id=vendor.id,
                opms_vendor_name="Maharam",
                netsuite_vendor_id="311",
                netsuite_vendor_name="Maharam Fabric Corp",
                is_active=True,
            )
        )

        product = opms_models.ProductModel(
            name="Tweed Classic",
            vendor_id=vendor.id,
            vendor_product_name="Classic Tweed",
            width=Decimal("54.000"),
            vrepeat=Decimal("13.500"),
            hrepeat=None,
            prop_65="Y",
            ab_2998_compliant="N",
            tariff_code="5407.61",
            front_content="100% Polyester",
            abrasion="100,000 Double Rubs (Wyzenbeek)",
            firecodes="NFPA 260",
            finishes=["Stain Resistant"],
            cleanings=["S", "W"],
            origins=["USA"],
            uses=["Upholstery"],
            updated_by=OPMS_USER_ID,
        )
        session.add(product)
        await session.flush()

        session.add(
            opms_models.ProductPriceModel(
                product_id=product.id,
                p_res_cut=Decimal("45.00"),
                p_hosp_roll=Decimal("38.50"),
                cost_cut=Decimal("20.00"),
                cost_roll=Decimal("18.25"),
                updated_by=OPMS_USER_ID,
            )
        )

        items = [
            opms_models.ItemModel(
                product_id=product.id,
                code="1234-5678",
                vendor_code="MH-100",
                vendor_color="Slate",
                colors=["Blue", "Grey"],
                updated_by=OPMS_USER_ID,
            ),
            opms_models.ItemModel(
                product_id=product.id,
                code="1234-5679",
                vendor_code="MH-101",
                vendor_color="Sand",
                colors=["Beige"],
                updated_by=OPMS_USER_ID,
            ),
            opms_models.ItemModel(
                product_id=product.id,
                code="1234-5670",
                archived=True,
                colors=["Black"],
                updated_by=OPMS_USER_ID,
            ),
        ]
        session.add_all(items)
        await session.commit()

    return {
        "vendor_id": vendor.id,
        "product_id": product.id,
        "item_id": items[0].id,
        "second_item_id": items[1].id,
        "archived_item_id": items[2].id,
        "item_code": items[0].code,
    }


# ── Fake Remote ──────────────────────────────────────────────────────────────


class FakeAdapter(RemoteAdapter):
    """In-memory RemoteAdapter keyed by itemId.

    Queue exceptions on ``fail_with`` to make the next create/update raise.
    """

    def __init__(self) -> None:
        super().__init__(sync_actor_id=SYNC_ACTOR_ID)
        self.records: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_with: list[Exception] = []
        self._next_id = 5000

    def _maybe_fail(self) -> None:
        if self.fail_with:
            raise self.fail_with.pop(0)

    async def search(self, natural_key: str) -> dict[str, Any] | None:
        self.calls.append(("search", natural_key))
        record = self.records.get(natural_key)
        return {"id": record["id"]} if record else None

    async def create(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create", payload["itemId"]))
        self._maybe_fail()
        self._next_id += 1
        record = {**payload, "id": str(self._next_id)}
        self.records[payload["itemId"]] = record
        return {"success": True, "id": record["id"]}

    async def update(self, remote_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update", payload["itemId"]))
        self._maybe_fail()
        record = self.records.get(payload["itemId"])
        if record is None or record["id"] != remote_id:
            raise RemoteNotFoundError(f"Record {remote_id} not found", 404)
        record.update(payload)
        return {"success": True, "id": remote_id}


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture
def configured_settings(monkeypatch):
    """Settings with the operator API key and webhook secret set."""
    monkeypatch.setenv("SYNC_ADMIN_API_KEY", ADMIN_API_KEY)
    monkeypatch.setenv("NETSUITE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
