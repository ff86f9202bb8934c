import os
import sqlite3
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))

# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from app.db import Base
from app.models import field_work  # noqa: F401
from app.models.field_work import TransportMode
from app.schemas.field_work import (
    ContractEquipmentSlot,
    InventorySnapshot,
    StockUnit,
    WorkContext,
)
from app.services.equipment_allocation import AllocationStore


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


# =============================================================================
# Field work fixtures
# =============================================================================


@pytest.fixture()
def make_slot():
    def _make(slot_id, category_code, model_code="", class_code="", display_name=""):
        return ContractEquipmentSlot(
            slot_id=slot_id,
            category_code=category_code,
            model_code=model_code,
            class_code=class_code or model_code,
            display_name=display_name or f"Model {model_code or category_code}",
        )
    return _make


@pytest.fixture()
def make_unit():
    def _make(unit_id, category_code, model_code="", **kwargs):
        kwargs.setdefault("class_code", model_code)
        kwargs.setdefault("serial_no", f"SN-{unit_id}")
        return StockUnit(
            unit_id=unit_id,
            category_code=category_code,
            model_code=model_code,
            **kwargs,
        )
    return _make


@pytest.fixture()
def work_context():
    """Plain internet product without certification."""
    return WorkContext(
        work_id="W100",
        contract_id="C100",
        customer_id="CU100",
        work_type_code="01",
        product_group="I",
        product_code="PD100",
        branch_id="SO1",
        operator_id="tech-1",
        market_code="MK1",
    )


@pytest.fixture()
def fiber_context(work_context):
    return work_context.model_copy(
        update={"certification_applies": True, "transport_mode": TransportMode.fiber}
    )


@pytest.fixture()
def wide_band_context(work_context):
    return work_context.model_copy(
        update={"certification_applies": True, "transport_mode": TransportMode.wide_band}
    )


@pytest.fixture()
def inventory(make_slot, make_unit):
    """Contract needs a modem and a set-top box; the technician holds both."""
    return InventorySnapshot(
        slots=[
            make_slot("S-MODEM", "03", "090201", display_name="Cable modem"),
            make_slot("S-STB", "04", "090401", display_name="HD set-top"),
        ],
        stock=[
            make_unit("U-MODEM-1", "03", "090201", mac_address="AA:00:00:00:00:01"),
            make_unit("U-MODEM-2", "03", "090201", mac_address="AA:00:00:00:00:02"),
            make_unit("U-STB-1", "04", "090401", mac_address="BB:00:00:00:00:01"),
            make_unit("U-AP-1", "10", "091001"),
        ],
        installed=[make_unit("OLD-STB", "04", "090401")],
        removed=[make_unit("R-MODEM", "03", "090201")],
    )


@pytest.fixture()
def store(inventory, work_context):
    store = AllocationStore(work_context.work_id)
    store.begin_load()
    store.load(inventory)
    return store
