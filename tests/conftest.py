import os
import uuid
from datetime import date
from decimal import Decimal

from cryptography.fernet import Fernet

os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", Fernet.generate_key().decode("ascii"))

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base


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

from app.models.billing import Invoice, InvoiceStatus
from app.models.catalog import Package, Service, ServiceStatus
from app.models.customer import Customer, CustomerStatus
from app.models.network import MikrotikRouter
from app.services.credential_crypto import encrypt_credential


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite's own transaction handling breaks SAVEPOINT; let
        # SQLAlchemy emit BEGIN itself.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    """Session whose commits land in savepoints of one rolled-back transaction."""
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def customer(db_session):
    customer = Customer(
        name="Budi Santoso",
        email=f"budi-{uuid.uuid4().hex[:8]}@example.com",
        phone="081234567890",
        address="Jl. Merdeka 1, Bandung",
        status=CustomerStatus.survey_complete,
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture()
def package(db_session):
    package = Package(name="Home 20", speed="20 Mbps", price=Decimal("150000.00"))
    db_session.add(package)
    db_session.commit()
    db_session.refresh(package)
    return package


@pytest.fixture()
def router(db_session):
    router = MikrotikRouter(
        name="core-1",
        ip_address="10.0.0.1",
        username="admin",
        password_encrypted=encrypt_credential("router-secret"),
    )
    db_session.add(router)
    db_session.commit()
    db_session.refresh(router)
    return router


@pytest.fixture()
def make_service(db_session, customer, package, router):
    def _make(
        status: ServiceStatus = ServiceStatus.active,
        expiry_date: date | None = date(2026, 3, 1),
        mikrotik_user_id: str | None = "*1A",
        **overrides,
    ) -> Service:
        values = dict(
            customer_id=customer.id,
            package_id=package.id,
            router_id=router.id,
            username=f"pppoe_test_{uuid.uuid4().hex[:8]}",
            password_encrypted=encrypt_credential("Secret#123ab"),
            mikrotik_user_id=mikrotik_user_id,
            status=status,
            activation_date=date(2026, 1, 30),
            expiry_date=expiry_date,
        )
        values.update(overrides)
        service = Service(**values)
        db_session.add(service)
        db_session.commit()
        db_session.refresh(service)
        return service

    return _make


@pytest.fixture()
def make_invoice(db_session):
    def _make(
        service: Service,
        due_date: date,
        status: InvoiceStatus = InvoiceStatus.unpaid,
        amount: Decimal = Decimal("150000.00"),
        invoice_date: date | None = None,
    ) -> Invoice:
        invoice = Invoice(
            service_id=service.id,
            amount=amount,
            status=status,
            invoice_date=invoice_date or due_date,
            due_date=due_date,
        )
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)
        return invoice

    return _make
