"""Flask-powered web interface for the FLWINS portal."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, redirect, request, send_from_directory
from werkzeug.exceptions import HTTPException

from .auth import (
    LOGIN_PATH,
    LOGOUT_PATH,
    AuthenticationError,
    Principal,
    PrincipalDecodeError,
    require_principal,
    resolve_principal,
)
from .config import AppConfig, ConfigurationError, load_config
from .graph_client import GraphClient, GraphClientError, GraphError
from .models import (
    DISPLAY_NAME_MAX_LENGTH,
    IntakeRecord,
    IntakeValidationError,
    Profile,
    clean_text,
)
from .profile import aggregate_profile, profile_from_claims
from .provisioning import (
    ProvisioningError,
    VerifiedDomainCache,
    build_account_provisioner,
    build_efsmod_inviter,
    build_primary_inviter,
)
from .storage import IntakeStore, StoreError


_STATIC_FOLDER = Path(__file__).resolve().parent / "static"
_PRIMARY_INVITE_REDIRECT_PATH = "/profile"
_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}
_BEST_EFFORT_ERRORS = (
    GraphClientError,
    ConfigurationError,
    ProvisioningError,
    IntakeValidationError,
)


def create_app(
    config: Optional[AppConfig] = None,
    config_path: Optional[Path | str] = None,
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__, static_folder=str(_STATIC_FOLDER))
    app.config["APP_CONFIG"] = config or load_config(Path(config_path) if config_path else None)
    app.json.sort_keys = False
    app.config["_STARTED_AT"] = time.monotonic()
    app.config["_DOMAIN_CACHE"] = VerifiedDomainCache()

    register_routes(app)
    register_error_handlers(app)
    return app


def register_routes(app: Flask) -> None:
    """Attach all web routes to the provided Flask app."""

    @app.after_request
    def _apply_security_headers(response: Any) -> Any:
        for header, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    # ------------------------------------------------------------------ #
    # Pages and platform auth redirects                                  #
    # ------------------------------------------------------------------ #
    @app.get("/")
    @app.get("/flwins.html")
    def index() -> Any:
        return send_from_directory(_STATIC_FOLDER, "flwins.html")

    @app.get("/flwins2.html")
    def legacy_index() -> Any:
        return redirect("/flwins.html")

    @app.get("/profile")
    def profile_page() -> Any:
        return send_from_directory(_STATIC_FOLDER, "profile.html")

    @app.get("/signin")
    @app.get("/create-account")
    def signin() -> Any:
        return redirect(LOGIN_PATH)

    @app.get("/signout")
    def signout() -> Any:
        return redirect(LOGOUT_PATH)

    # ------------------------------------------------------------------ #
    # Status                                                             #
    # ------------------------------------------------------------------ #
    @app.get("/health")
    def health() -> Any:
        return jsonify(
            {
                "status": "healthy",
                "uptime": round(time.monotonic() - app.config["_STARTED_AT"], 3),
                "timestamp": _utc_timestamp(),
            }
        )

    @app.get("/api/status")
    def api_status() -> Any:
        config = _app_config(app)
        return jsonify(
            {
                "message": "Welcome to the FLWINS portal",
                "status": "running",
                "environment": config.server.environment,
                "timestamp": _utc_timestamp(),
            }
        )

    # ------------------------------------------------------------------ #
    # Authentication state and profile                                   #
    # ------------------------------------------------------------------ #
    @app.get("/api/auth/status")
    @app.get("/api/auth/me")
    def api_auth_status() -> Any:
        config = _app_config(app)
        try:
            principal = resolve_principal(
                _auth_base_url(config), request.headers, session=app.config.get("_AUTH_HTTP_SESSION")
            )
        except PrincipalDecodeError as exc:
            app.logger.error("Auth status: %s", exc)
            return jsonify({"authenticated": False, "user": None, "error": "Failed to read authentication state"}), 500
        return jsonify(
            {
                "authenticated": principal is not None,
                "user": principal.to_user() if principal else None,
            }
        )

    @app.get("/api/profile")
    def api_profile() -> Any:
        principal = _require_principal(app)
        try:
            result = aggregate_profile(principal, graph_factory=_graph_factory(app))
        except Exception as exc:
            app.logger.exception("Profile API error for %s: %s", principal.user_id, exc)
            return jsonify({"error": "Failed to get user profile"}), 500
        return jsonify(result.to_dict())

    @app.post("/api/profile")
    def api_update_profile() -> Any:
        # Directory attributes are read-only for this application.
        return jsonify(
            {
                "message": "Profile update received",
                "note": "Azure AD profile updates require Microsoft Graph API integration",
            }
        )

    # ------------------------------------------------------------------ #
    # Intake                                                             #
    # ------------------------------------------------------------------ #
    @app.post("/api/intake")
    def api_intake() -> Any:
        config = _app_config(app)
        principal = _require_principal(app)

        payload = request.get_json(silent=True)
        if payload is None:
            payload = request.form.to_dict()
        if not isinstance(payload, dict):
            payload = {}

        fallback_profile = _fallback_profile(app, principal, payload)
        try:
            record = IntakeRecord.from_submission(
                principal.user_id, payload, fallback_email=fallback_profile.email
            )
        except IntakeValidationError as exc:
            return jsonify({"error": str(exc)}), 400

        try:
            saved = _get_intake_store(app, config).upsert(record)
        except ConfigurationError as exc:
            app.logger.error("Intake: database is not configured: %s", exc)
            return jsonify({"error": "Failed to save intake form.", "message": str(exc)}), 500
        except StoreError as exc:
            app.logger.error("Intake: unable to save intake for %s: %s", principal.user_id, exc)
            return jsonify({"error": "Failed to save intake form.", "message": str(exc)}), 500
        app.logger.info("Intake: saved intake form for user %s.", saved.user_id)

        display_name = clean_text(payload.get("displayName"), DISPLAY_NAME_MAX_LENGTH) or fallback_profile.displayName
        account_creation = _provision_account(app, config, saved, display_name)
        efsmod_invite = _invite_to_efsmod(app, config, saved, display_name)

        return jsonify(
            {
                "message": "Intake form submitted successfully.",
                "accountCreation": account_creation,
                "efsmodeInvite": efsmod_invite,
            }
        )


def register_error_handlers(app: Flask) -> None:
    """Map the error taxonomy onto JSON responses."""

    @app.errorhandler(404)
    def handle_not_found(exc: Any) -> Any:
        return jsonify({"error": "Route not found", "path": request.full_path.rstrip("?")}), 404

    @app.errorhandler(AuthenticationError)
    def handle_unauthenticated(exc: AuthenticationError) -> Any:
        return jsonify({"error": "User not authenticated", "message": str(exc)}), 401

    @app.errorhandler(PrincipalDecodeError)
    def handle_principal_decode(exc: PrincipalDecodeError) -> Any:
        app.logger.error("Unable to decode client principal: %s", exc)
        return jsonify({"error": "Failed to read authentication state"}), 500

    @app.errorhandler(IntakeValidationError)
    def handle_validation(exc: IntakeValidationError) -> Any:
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(ConfigurationError)
    def handle_configuration(exc: ConfigurationError) -> Any:
        app.logger.error("Configuration error: %s", exc)
        return jsonify({"error": "Configuration error", "message": str(exc)}), 500

    @app.errorhandler(GraphError)
    def handle_graph(exc: GraphError) -> Any:
        app.logger.error("Upstream identity call failed: %s", exc)
        status = exc.status_code if 400 <= exc.status_code < 600 else 502
        return jsonify({"error": exc.error, "message": exc.description}), status

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return exc
        app.logger.exception("Unhandled error: %s", exc)
        config = _app_config(app)
        message = str(exc) if config.server.is_development else "Internal server error"
        return jsonify({"error": "Something went wrong!", "message": message}), 500


# ---------------------------------------------------------------------- #
# Helpers                                                                #
# ---------------------------------------------------------------------- #
def _app_config(app: Flask) -> AppConfig:
    return app.config["APP_CONFIG"]


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _auth_base_url(config: AppConfig) -> Optional[str]:
    # Never request.host_url: the Host header is caller controlled.
    return config.server.public_base_url


def _require_principal(app: Flask) -> Principal:
    config = _app_config(app)
    return require_principal(
        _auth_base_url(config), request.headers, session=app.config.get("_AUTH_HTTP_SESSION")
    )


def _fallback_profile(app: Flask, principal: Principal, payload: Dict[str, Any]) -> Profile:
    """Claims profile, topped up from Graph only when the email has to come from it."""

    profile = profile_from_claims(principal)
    if clean_text(payload.get("email")) or profile.email or not principal.access_token:
        return profile
    return aggregate_profile(principal, graph_factory=_graph_factory(app)).profile


def _graph_factory(app: Flask) -> Callable[[str], GraphClient]:
    factory = app.config.get("_GRAPH_FACTORY")
    if factory is not None:
        return factory
    return lambda access_token: GraphClient(access_token=access_token)


def _get_intake_store(app: Flask, config: AppConfig) -> IntakeStore:
    store = app.config.get("_INTAKE_STORE")
    if store is None:
        store = IntakeStore(config.database)
        app.config["_INTAKE_STORE"] = store
    return store


def _provision_account(
    app: Flask,
    config: AppConfig,
    record: IntakeRecord,
    display_name: Optional[str],
) -> Optional[Dict[str, Any]]:
    mode = config.provisioning.mode
    if mode == "off" or not config.graph.has_credentials:
        app.logger.info("Intake: account provisioning skipped (mode=%s, configured=%s).", mode, config.graph.has_credentials)
        return None

    try:
        if mode == "invite":
            base_url = config.server.public_base_url
            if not base_url:
                raise ConfigurationError(
                    "Invite mode needs AUTH_ENDPOINT_BASE or WEBSITE_HOSTNAME for the redirect URL."
                )
            inviter = build_primary_inviter(config.graph, base_url, _PRIMARY_INVITE_REDIRECT_PATH)
            invitation = inviter.invite(record, display_name)
            return {
                "invited": True,
                "invitedEmail": invitation.email,
                "invitedUserId": invitation.invited_user_id,
                "inviteRedeemUrl": invitation.invite_redeem_url,
            }

        provisioner = build_account_provisioner(config.graph, app.config["_DOMAIN_CACHE"])
        account = provisioner.create_user(record, display_name)
        return {
            "created": True,
            "userId": account.created_user.get("id"),
            "userPrincipalName": account.user_principal_name,
            "initialPassword": account.initial_password,
        }
    except _BEST_EFFORT_ERRORS as exc:
        app.logger.warning("Intake: account provisioning failed for %s: %s", record.user_id, exc)
        return _soft_error(exc, created=False)
    except Exception as exc:
        app.logger.exception("Intake: unexpected account provisioning error for %s: %s", record.user_id, exc)
        return _soft_error(exc, created=False)


def _invite_to_efsmod(
    app: Flask,
    config: AppConfig,
    record: IntakeRecord,
    display_name: Optional[str],
) -> Optional[Dict[str, Any]]:
    if not config.efsmod.has_credentials and not config.efsmod.base_url:
        return None

    try:
        invitation = build_efsmod_inviter(config.efsmod).invite(record, display_name)
    except _BEST_EFFORT_ERRORS as exc:
        app.logger.warning("Intake: EFSMOD invitation failed for %s: %s", record.user_id, exc)
        return _soft_error(exc)
    except Exception as exc:
        app.logger.exception("Intake: unexpected EFSMOD invitation error for %s: %s", record.user_id, exc)
        return _soft_error(exc)
    return invitation.to_dict()


def _soft_error(exc: Exception, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = dict(extra)
    payload["error"] = str(exc)
    if isinstance(exc, GraphError) and exc.status_code:
        payload["status"] = exc.status_code
    return payload


def main() -> None:
    """Run the development server."""

    app = create_app()
    config = _app_config(app)
    prepare_database(app)
    app.run(
        host=config.server.host,
        port=config.server.port,
        debug=config.server.is_development,
    )


def prepare_database(app: Flask) -> None:
    """Create the intake table on start; a failure is logged, not fatal."""

    config = _app_config(app)
    if not config.database.is_configured:
        app.logger.warning("SQL configuration is missing; intake submissions will fail until it is provided.")
        return
    try:
        _get_intake_store(app, config).ensure_schema()
    except (ConfigurationError, StoreError) as exc:
        app.logger.error("Unable to prepare the intake table: %s", exc)


if __name__ == "__main__":
    main()
