"""Persistence helpers for intake form submissions."""
from __future__ import annotations

import logging
import re
import struct
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    MetaData,
    Table,
    Unicode,
    Uuid,
    create_engine,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import (
    ArgumentError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    NoSuchModuleError,
    OperationalError,
    SQLAlchemyError,
)

from .config import ConfigurationError, DatabaseConfig
from .models import IntakeRecord


logger = logging.getLogger(__name__)

SQL_SCOPE = "https://database.windows.net/.default"
# pyodbc connection attribute carrying an Azure AD access token.
SQL_COPT_SS_ACCESS_TOKEN = 1256
_ODBC_DRIVER_KEY = re.compile(r"(^|;)\s*driver\s*=", re.IGNORECASE)

T = TypeVar("T")

metadata = MetaData()

intake_forms = Table(
    "IntakeForms",
    metadata,
    Column("Id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("UserId", Unicode(255), nullable=False),
    Column("Email", Unicode(256), nullable=False),
    Column("FirstName", Unicode(150)),
    Column("LastName", Unicode(150)),
    Column("Department", Unicode(150)),
    Column("JobTitle", Unicode(150)),
    Column("OfficeLocation", Unicode(150)),
    Column("WorkPhone", Unicode(50)),
    Column("Address", Unicode(500)),
    Column("City", Unicode(150)),
    Column("State", Unicode(50)),
    Column("ZipCode", Unicode(20)),
    Column("Phone", Unicode(50)),
    Column("CreatedAt", DateTime, nullable=False),
    Column("UpdatedAt", DateTime, nullable=False),
    Index("IX_IntakeForms_UserId", "UserId", unique=True),
    Index("IX_IntakeForms_Email", "Email"),
)


class StoreError(RuntimeError):
    """Raised when the intake store rejects an operation."""


class StoreConnectivityError(StoreError):
    """Raised when the database cannot be reached; the pool is discarded."""


def _utc_now() -> datetime:
    # DATETIME2 columns carry no offset, values are stored as naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _connection_url(connection_string: str, odbc_driver: str) -> URL:
    if "://" in connection_string:
        return make_url(connection_string)
    odbc_connect = connection_string
    if not _ODBC_DRIVER_KEY.search(odbc_connect):
        # ADO.NET style strings carry no driver; ODBC needs one.
        odbc_connect = f"Driver={{{odbc_driver}}};{odbc_connect}"
    return URL.create("mssql+pyodbc", query={"odbc_connect": odbc_connect})


def _column_values(record: IntakeRecord) -> dict[str, Any]:
    return {
        "UserId": record.user_id,
        "Email": record.email,
        "FirstName": record.first_name,
        "LastName": record.last_name,
        "Department": record.department,
        "JobTitle": record.job_title,
        "OfficeLocation": record.office_location,
        "WorkPhone": record.work_phone,
        "Address": record.address,
        "City": record.city,
        "State": record.state,
        "ZipCode": record.zip_code,
        "Phone": record.phone,
    }


class IntakeStore:
    """Lazily connected store holding one intake row per user id."""

    def __init__(self, config: DatabaseConfig, credential: Optional[Any] = None) -> None:
        self._config = config
        self._credential = credential
        self._engine: Optional[Engine] = None
        self._schema_ready = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Engine lifecycle                                                   #
    # ------------------------------------------------------------------ #
    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    def _get_engine(self) -> Engine:
        with self._lock:
            if self._engine is None:
                self._engine = self._build_engine()
                self._schema_ready = False
            return self._engine

    def _build_engine(self) -> Engine:
        config = self._config
        try:
            if config.connection_string:
                return create_engine(
                    _connection_url(config.connection_string, config.odbc_driver), pool_pre_ping=True
                )
            if config.uses_managed_identity:
                url = URL.create(
                    "mssql+pyodbc",
                    host=config.server,
                    database=config.database,
                    query={
                        "driver": config.odbc_driver,
                        "Encrypt": "yes",
                        "TrustServerCertificate": "no",
                    },
                )
                engine = create_engine(url, pool_pre_ping=True)
                event.listen(engine, "do_connect", self._inject_access_token)
                return engine
        except (ArgumentError, NoSuchModuleError, ImportError) as exc:
            raise ConfigurationError(f"Invalid SQL configuration: {exc}") from exc

        raise ConfigurationError(
            "SQL configuration is missing. Provide SQL_SERVER/SQL_DATABASE or SQL_CONNECTION_STRING.",
            details={
                "SQL_SERVER": bool(config.server),
                "SQL_DATABASE": bool(config.database),
                "SQL_CONNECTION_STRING": bool(config.connection_string),
            },
        )

    def _inject_access_token(self, dialect: Any, conn_rec: Any, cargs: list, cparams: dict) -> None:
        """Mint a fresh managed-identity token for every new DBAPI connection."""

        if self._credential is None:
            self._credential = DefaultAzureCredential()
        try:
            token = self._credential.get_token(SQL_SCOPE).token
        except AzureError as exc:
            raise StoreConnectivityError(f"Unable to acquire Azure AD token for SQL Database: {exc}") from exc
        if not token:
            raise StoreConnectivityError("Unable to acquire Azure AD token for SQL Database.")
        encoded = token.encode("utf-16-le")
        attrs = dict(cparams.get("attrs_before") or {})
        attrs[SQL_COPT_SS_ACCESS_TOKEN] = struct.pack(f"<I{len(encoded)}s", len(encoded), encoded)
        cparams["attrs_before"] = attrs

    def discard(self) -> None:
        """Dispose of the pool so the next call reconnects."""

        with self._lock:
            engine, self._engine = self._engine, None
            self._schema_ready = False
        if engine is not None:
            engine.dispose()

    def _run(self, operation: Callable[[Engine], T]) -> T:
        engine = self._get_engine()
        try:
            return operation(engine)
        except StoreConnectivityError:
            self.discard()
            raise
        except (OperationalError, InterfaceError) as exc:
            logger.error("SQL pool error, discarding connection pool: %s", exc)
            self.discard()
            raise StoreConnectivityError(f"Unable to reach the SQL database: {exc.orig or exc}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                self.discard()
                raise StoreConnectivityError(f"SQL connection was invalidated: {exc}") from exc
            raise StoreError(f"SQL operation failed: {exc.orig or exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"SQL operation failed: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Schema / data operations                                           #
    # ------------------------------------------------------------------ #
    def ensure_schema(self) -> None:
        """Create the intake table and its indexes when they do not exist yet."""

        if self._schema_ready and self._engine is not None:
            return
        self._run(lambda engine: metadata.create_all(engine, checkfirst=True))
        self._schema_ready = True

    def upsert(self, record: IntakeRecord) -> IntakeRecord:
        """Insert the record, or update every field of the existing row for its user."""

        self.ensure_schema()
        now = _utc_now()
        values = _column_values(record)

        def _update(conn: Any) -> Optional[Any]:
            existing = conn.execute(
                select(intake_forms.c.Id, intake_forms.c.CreatedAt).where(
                    intake_forms.c.UserId == record.user_id
                )
            ).first()
            if existing is None:
                return None
            conn.execute(
                update(intake_forms)
                .where(intake_forms.c.UserId == record.user_id)
                .values(**values, UpdatedAt=now)
            )
            return existing

        def _operation(engine: Engine) -> IntakeRecord:
            try:
                with engine.begin() as conn:
                    existing = _update(conn)
                    if existing is None:
                        row_id = uuid.uuid4()
                        conn.execute(
                            insert(intake_forms).values(
                                Id=row_id, **values, CreatedAt=now, UpdatedAt=now
                            )
                        )
                        return replace(record, id=str(row_id), created_at=now, updated_at=now)
            except IntegrityError:
                # A concurrent submission inserted the row first; last write wins.
                with engine.begin() as conn:
                    existing = _update(conn)
                if existing is None:
                    raise
            return replace(
                record, id=str(existing.Id), created_at=existing.CreatedAt, updated_at=now
            )

        return self._run(_operation)

    def get(self, user_id: str) -> Optional[IntakeRecord]:
        self.ensure_schema()

        def _operation(engine: Engine) -> Optional[IntakeRecord]:
            with engine.connect() as conn:
                row = conn.execute(
                    select(intake_forms).where(intake_forms.c.UserId == user_id)
                ).mappings().first()
            return IntakeRecord.from_row(dict(row)) if row else None

        return self._run(_operation)

    def count(self) -> int:
        self.ensure_schema()

        def _operation(engine: Engine) -> int:
            with engine.connect() as conn:
                return int(conn.execute(select(func.count()).select_from(intake_forms)).scalar_one())

        return self._run(_operation)


__all__ = [
    "IntakeStore",
    "StoreConnectivityError",
    "StoreError",
    "intake_forms",
    "metadata",
]
