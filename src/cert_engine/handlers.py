"""HTTP handlers behind the Azure Functions routes.

Each handler takes the request and a built ``CertificateEngine`` and returns an
``HttpResponse``; ``function_app`` only binds routes to them. Engine errors
map to status codes here, anything else propagates to the host as a 500.
"""

from __future__ import annotations

import hmac
import json
import logging

import azure.functions as func

from cert_engine.engine import CertificateEngine
from cert_engine.errors import (
    CertEngineError,
    CertificateNotFoundError,
    ChallengeUnavailableError,
    ConfigurationError,
    DomainNotFoundError,
    DomainNotVerifiedError,
    IssuanceConflictError,
    IssuanceFailure,
    PropagationError,
    RateLimitError,
    SsrfError,
    StateMismatchError,
)
from cert_engine.models import ChallengeType, Dns01ChallengeInfo

logger = logging.getLogger(__name__)

INTERNAL_SECRET_HEADER = "X-Internal-Secret"

_ERROR_STATUS: list[tuple[type[CertEngineError], int]] = [
    (ConfigurationError, 503),
    (CertificateNotFoundError, 404),
    (DomainNotFoundError, 404),
    (IssuanceConflictError, 409),
    (StateMismatchError, 409),
    (RateLimitError, 429),
    (PropagationError, 202),
    (IssuanceFailure, 502),
    (SsrfError, 400),
    (ChallengeUnavailableError, 400),
    (DomainNotVerifiedError, 400),
]


def json_response(payload: dict, status_code: int = 200) -> func.HttpResponse:
    return func.HttpResponse(json.dumps(payload), status_code=status_code, mimetype="application/json")


def error_response(error: CertEngineError) -> func.HttpResponse:
    status_code = next((code for cls, code in _ERROR_STATUS if isinstance(error, cls)), 400)
    payload: dict = {"error": str(error)}
    if isinstance(error, PropagationError):
        payload["retryable"] = True
    return json_response(payload, status_code)


def _secret_matches(provided: str | None, expected: str) -> bool:
    return provided is not None and hmac.compare_digest(provided.encode(), expected.encode())


def _check_operator_secret(req: func.HttpRequest, engine: CertificateEngine, *, bearer: bool) -> func.HttpResponse | None:
    """Return an error response unless the request carries the shared operator secret."""
    expected = engine.config.internal_api_secret
    if not expected:
        return json_response({"error": "INTERNAL_API_SECRET not configured"}, 503)

    if bearer:
        header = req.headers.get("Authorization", "")
        provided = header.removeprefix("Bearer ") if header.startswith("Bearer ") else None
    else:
        provided = req.headers.get(INTERNAL_SECRET_HEADER)

    if not _secret_matches(provided, expected):
        return json_response({"error": "Unauthorized"}, 401)
    return None


def _json_body(req: func.HttpRequest) -> dict | None:
    try:
        body = req.get_json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def issue_certificate(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    """POST {domainId, challengeType}: start issuance for a verified domain."""
    body = _json_body(req)
    if not body or not body.get("domainId"):
        return json_response({"error": "domainId is required"}, 400)
    try:
        challenge_type = ChallengeType(body.get("challengeType", ChallengeType.HTTP01))
    except ValueError:
        return json_response({"error": "challengeType must be HTTP01 or DNS01"}, 400)

    try:
        result = engine.issuance.request_certificate(body["domainId"], challenge_type)
    except CertEngineError as e:
        return error_response(e)

    if isinstance(result, Dns01ChallengeInfo):
        return json_response(result.to_dict())
    return json_response({"certId": result, "status": "PENDING_HTTP01"}, 202)


def verify_dns(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    """POST {certId}: DNS-01 phase 2. Answers 202 while the TXT record is still propagating."""
    body = _json_body(req)
    if not body or not body.get("certId"):
        return json_response({"error": "certId is required"}, 400)
    try:
        engine.issuance.complete_dns01(body["certId"])
    except CertEngineError as e:
        return error_response(e)
    return json_response({"success": True, "certId": body["certId"]})


def certificate_status(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    try:
        return json_response(engine.issuance.get_status(req.route_params["certId"]))
    except CertEngineError as e:
        return error_response(e)


def cancel_certificate(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    try:
        engine.issuance.cancel(req.route_params["certId"])
    except CertEngineError as e:
        return error_response(e)
    return json_response({"success": True})


def revoke_certificate(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    try:
        engine.issuance.revoke(req.route_params["certId"])
    except CertEngineError as e:
        return error_response(e)
    return json_response({"success": True})


def renew_certificate(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    try:
        result = engine.renewal.renew_certificate(req.route_params["certId"])
    except CertEngineError as e:
        return error_response(e)
    if isinstance(result, Dns01ChallengeInfo):
        return json_response(result.to_dict())
    return json_response({"certId": result, "status": "PENDING_HTTP01"}, 202)


def ssl_renewal(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    """Operator trigger. GET ?action=health reports counts; POST runs one renewal batch."""
    denied = _check_operator_secret(req, engine, bearer=True)
    if denied is not None:
        return denied

    if req.method == "GET" and req.params.get("action") == "health":
        return json_response(engine.renewal.check_certificate_health().to_dict())
    if req.method == "GET":
        return json_response({"error": "Unknown action"}, 400)

    summary = engine.renewal.run_auto_renewal()
    return json_response({"success": True, **summary.to_dict()})


def internal_cert_bundle(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    """Decrypted bundle for the proxy agent, gated by ``X-Internal-Secret``."""
    denied = _check_operator_secret(req, engine, bearer=False)
    if denied is not None:
        return denied

    bundle = engine.issuance.get_active_bundle(req.route_params["domain"])
    if bundle is None:
        return json_response({"error": "No active certificate"}, 404)
    return json_response(bundle.to_dict())


def acme_challenge(req: func.HttpRequest, engine: CertificateEngine) -> func.HttpResponse:
    """Serve the key authorization for a pending HTTP-01 challenge on the request's Host."""
    host = req.headers.get("Host", "").split(":", 1)[0].lower()
    key_authorization = engine.issuance.key_authorization_for(host, req.route_params.get("token", ""))
    if key_authorization is None:
        return func.HttpResponse("Not found", status_code=404, mimetype="text/plain")
    return func.HttpResponse(key_authorization, status_code=200, mimetype="text/plain")
