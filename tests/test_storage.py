"""
Tests for the intake store.
"""
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ClientAuthenticationError
from sqlalchemy import inspect

from flwins_portal.config import ConfigurationError, DatabaseConfig
from flwins_portal.models import IntakeRecord
from flwins_portal.storage import (
    SQL_COPT_SS_ACCESS_TOKEN,
    IntakeStore,
    StoreConnectivityError,
    _connection_url,
)


def _record(user_id="abc123", **values):
    payload = {"email": "ana@x.com", "firstName": "Ana", "lastName": "Lopez", "city": "Tampa"}
    payload.update(values)
    return IntakeRecord.from_submission(user_id, payload)


class TestSchema:
    """Schema creation."""

    def test_ensure_schema_is_idempotent(self, store):
        store.ensure_schema()
        store.discard()
        store.ensure_schema()
        engine = store._get_engine()
        inspector = inspect(engine)
        assert "IntakeForms" in inspector.get_table_names()
        index_names = {index["name"] for index in inspector.get_indexes("IntakeForms")}
        assert {"IX_IntakeForms_UserId", "IX_IntakeForms_Email"} <= index_names

    def test_missing_configuration(self):
        store = IntakeStore(DatabaseConfig())
        assert not store.is_configured
        with pytest.raises(ConfigurationError) as excinfo:
            store.ensure_schema()
        assert excinfo.value.details == {
            "SQL_SERVER": False,
            "SQL_DATABASE": False,
            "SQL_CONNECTION_STRING": False,
        }


class TestUpsert:
    """One row per user id, last write wins."""

    def test_insert_then_read(self, store):
        saved = store.upsert(_record())
        assert saved.id
        assert saved.created_at == saved.updated_at

        row = store.get("abc123")
        assert row.email == "ana@x.com"
        assert row.first_name == "Ana"
        assert row.city == "Tampa"
        assert row.department is None

    def test_second_submission_updates_same_row(self, store):
        first = store.upsert(_record())
        second = store.upsert(_record(email="ana.lopez@x.com", city="Orlando", department="Nursing"))

        assert store.count() == 1
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at

        row = store.get("abc123")
        assert row.email == "ana.lopez@x.com"
        assert row.city == "Orlando"
        assert row.department == "Nursing"

    def test_update_clears_omitted_fields(self, store):
        store.upsert(_record(department="Nursing"))
        store.upsert(_record())
        assert store.get("abc123").department is None

    def test_separate_users_get_separate_rows(self, store):
        store.upsert(_record("user-1"))
        store.upsert(_record("user-2", email="other@x.com"))
        assert store.count() == 2

    def test_unknown_user(self, store):
        assert store.get("nobody") is None


class TestManagedIdentity:
    """Access token injection for Azure SQL connections."""

    def test_token_is_packed_into_connection_attributes(self):
        credential = MagicMock()
        credential.get_token.return_value.token = "abc"
        store = IntakeStore(DatabaseConfig(server="db.example.net", database="flwins"), credential=credential)
        cparams = {}

        store._inject_access_token(None, None, [], cparams)

        credential.get_token.assert_called_once_with("https://database.windows.net/.default")
        packed = cparams["attrs_before"][SQL_COPT_SS_ACCESS_TOKEN]
        encoded = "abc".encode("utf-16-le")
        assert packed[:4] == len(encoded).to_bytes(4, "little")
        assert packed[4:] == encoded

    def test_token_failure_is_a_connectivity_error(self):
        credential = MagicMock()
        credential.get_token.side_effect = ClientAuthenticationError("managed identity unavailable")
        store = IntakeStore(DatabaseConfig(server="db.example.net", database="flwins"), credential=credential)

        with pytest.raises(StoreConnectivityError):
            store._inject_access_token(None, None, [], {})

    def test_connectivity_error_discards_the_engine(self, database_config):
        store = IntakeStore(database_config)
        store._get_engine()

        def _fail(engine):
            raise StoreConnectivityError("token unavailable")

        with pytest.raises(StoreConnectivityError):
            store._run(_fail)
        assert store._engine is None


class TestReconnect:
    """A failed connection does not poison later calls."""

    def test_store_recovers_once_the_database_is_reachable(self, tmp_path):
        folder = tmp_path / "missing"
        store = IntakeStore(DatabaseConfig(connection_string=f"sqlite:///{folder / 'intake.db'}"))
        record = _record()

        with pytest.raises(StoreConnectivityError):
            store.upsert(record)
        assert store._engine is None

        folder.mkdir()
        store.upsert(record)

        assert store.count() == 1
        assert store.get("abc123").first_name == "Ana"
        store.discard()


class TestConnectionUrl:
    """Connection strings without a URL scheme go through ODBC."""

    def test_driver_is_added_to_ado_style_strings(self):
        url = _connection_url("Server=tcp:db.example.net;Database=flwins;", "ODBC Driver 18 for SQL Server")
        assert url.drivername == "mssql+pyodbc"
        assert url.query["odbc_connect"] == (
            "Driver={ODBC Driver 18 for SQL Server};Server=tcp:db.example.net;Database=flwins;"
        )

    def test_existing_driver_is_kept(self):
        connection_string = "DRIVER={ODBC Driver 17 for SQL Server};Server=db.example.net;"
        url = _connection_url(connection_string, "ODBC Driver 18 for SQL Server")
        assert url.query["odbc_connect"] == connection_string

    def test_urls_are_parsed_directly(self):
        url = _connection_url("sqlite:///intake.db", "ODBC Driver 18 for SQL Server")
        assert url.drivername == "sqlite"
