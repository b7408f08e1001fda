"""
Pytest fixtures for the FLWINS portal tests.
"""
import base64
import json
from unittest.mock import MagicMock

import pytest

from flwins_portal.auth import Principal
from flwins_portal.config import (
    AppConfig,
    DatabaseConfig,
    GraphConfig,
    InvitationConfig,
    ProvisioningConfig,
    ServerConfig,
)
from flwins_portal.storage import IntakeStore
from flwins_portal.web import create_app


@pytest.fixture
def database_config(tmp_path):
    """SQLite file database standing in for Azure SQL."""
    return DatabaseConfig(connection_string=f"sqlite:///{tmp_path / 'intake.db'}")


@pytest.fixture
def store(database_config):
    store = IntakeStore(database_config)
    yield store
    store.discard()


@pytest.fixture
def app_config(database_config):
    """Configuration with storage only; every provisioning phase is unconfigured."""
    return AppConfig(
        database=database_config,
        graph=GraphConfig(),
        efsmod=InvitationConfig(),
        provisioning=ProvisioningConfig(mode="create"),
        server=ServerConfig(environment="development"),
    )


@pytest.fixture
def app(app_config, store):
    app = create_app(app_config)
    app.config["TESTING"] = True
    app.config["_INTAKE_STORE"] = store
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def encode_principal(claims, user_id=None, auth_typ="aad"):
    """Build the base64 payload the App Service proxy injects."""
    payload = {
        "auth_typ": auth_typ,
        "claims": [{"typ": typ, "val": val} for typ, val in claims],
    }
    if user_id:
        payload["userId"] = user_id
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def principal_headers(user_id="abc123", claims=None, name=None, access_token=None):
    claims = claims if claims is not None else [("name", "Ana Lopez"), ("email", "ana@x.com")]
    headers = {
        "X-MS-CLIENT-PRINCIPAL": encode_principal(claims),
        "X-MS-CLIENT-PRINCIPAL-ID": user_id,
        "X-MS-CLIENT-PRINCIPAL-IDP": "aad",
    }
    if name:
        headers["X-MS-CLIENT-PRINCIPAL-NAME"] = name
    if access_token:
        headers["X-MS-TOKEN-AAD-ACCESS-TOKEN"] = access_token
    return headers


@pytest.fixture
def make_principal():
    def _make(user_id="abc123", claims=None, access_token=None, provider="aad"):
        return Principal(
            user_id=user_id,
            identity_provider=provider,
            user_details=None,
            claims=list(claims or []),
            access_token=access_token,
            source="header",
        )

    return _make


def json_response(status_code, payload=None, text=""):
    """A stand-in for ``requests.Response``."""
    response = MagicMock()
    response.status_code = status_code
    response.text = text or (json.dumps(payload) if payload is not None else "")
    if payload is None:
        response.json.side_effect = ValueError("No JSON body")
    else:
        response.json.return_value = payload
    return response
