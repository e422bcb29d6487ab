"""Tests for cert_engine.handlers."""

import dataclasses
import json

import azure.functions as func
import pytest

from cert_engine import handlers
from cert_engine.errors import (
    ConfigurationError,
    IssuanceConflictError,
    IssuanceFailure,
    PropagationError,
    RateLimitError,
    SsrfError,
)


def _request(method="GET", url="/api/test", body=None, headers=None, params=None, route_params=None):
    return func.HttpRequest(
        method=method,
        url=url,
        headers=headers or {},
        params=params or {},
        route_params=route_params or {},
        body=json.dumps(body).encode() if body is not None else b"",
    )


def _json(resp):
    return json.loads(resp.get_body())


@pytest.fixture
def engine(sandbox_engine):
    # Leave HTTP-01 records pending; completion is covered in test_engine.
    sandbox_engine.issuance.set_job_listener(lambda: None)
    return sandbox_engine


@pytest.fixture
def domain(engine):
    return engine.store.add_domain("shop.example.com", verified=True)


# --- Error mapping ---


@pytest.mark.parametrize(
    "error, status_code",
    [
        (ConfigurationError("ACME_CONTACT_EMAIL missing"), 503),
        (IssuanceConflictError("busy"), 409),
        (RateLimitError("example.com", 45, 45), 429),
        (SsrfError("evil.example.com", "10.0.0.1"), 400),
        (IssuanceFailure("CA said no"), 502),
    ],
)
def test_error_response_status_codes(error, status_code):
    assert handlers.error_response(error).status_code == status_code


def test_propagation_error_is_accepted_and_retryable():
    resp = handlers.error_response(PropagationError("_acme-challenge.shop.example.com"))

    assert resp.status_code == 202
    assert _json(resp)["retryable"] is True


# --- Issuance routes ---


def test_issue_certificate_http01(engine, domain):
    resp = handlers.issue_certificate(
        _request("POST", body={"domainId": domain.id, "challengeType": "HTTP01"}), engine
    )

    assert resp.status_code == 202
    assert _json(resp)["status"] == "PENDING_HTTP01"


def test_issue_certificate_dns01_returns_txt_record(engine, domain):
    resp = handlers.issue_certificate(_request("POST", body={"domainId": domain.id, "challengeType": "DNS01"}), engine)

    payload = _json(resp)
    assert resp.status_code == 200
    assert payload["txtName"] == "_acme-challenge.shop.example.com"
    assert payload["certId"]


@pytest.mark.parametrize(
    "body",
    [None, {}, {"domainId": "x", "challengeType": "TLSALPN01"}],
)
def test_issue_certificate_bad_request(engine, body):
    assert handlers.issue_certificate(_request("POST", body=body), engine).status_code == 400


def test_issue_certificate_unknown_domain(engine):
    resp = handlers.issue_certificate(_request("POST", body={"domainId": "missing"}), engine)
    assert resp.status_code == 404


def test_verify_dns_success_and_state_mismatch(engine, domain):
    info = engine.issuance.initiate_dns01(domain.id, domain.hostname)
    req = _request("POST", body={"certId": info.cert_id})

    assert _json(handlers.verify_dns(req, engine)) == {"success": True, "certId": info.cert_id}
    assert handlers.verify_dns(req, engine).status_code == 409


def test_status_cancel_and_renew_routes(engine, domain):
    info = engine.issuance.initiate_dns01(domain.id, domain.hostname)
    route = {"certId": info.cert_id}

    status = handlers.certificate_status(_request(route_params=route), engine)
    assert _json(status)["status"] == "PENDING_DNS01"

    assert handlers.renew_certificate(_request("POST", route_params=route), engine).status_code == 409
    assert _json(handlers.cancel_certificate(_request("POST", route_params=route), engine)) == {"success": True}
    assert handlers.cancel_certificate(_request("POST", route_params=route), engine).status_code == 409
    assert handlers.certificate_status(_request(route_params={"certId": "missing"}), engine).status_code == 404


def test_revoke_route(engine, domain):
    info = engine.issuance.initiate_dns01(domain.id, domain.hostname)
    route = {"certId": info.cert_id}
    assert handlers.revoke_certificate(_request("POST", route_params=route), engine).status_code == 409

    engine.issuance.complete_dns01(info.cert_id)

    assert _json(handlers.revoke_certificate(_request("POST", route_params=route), engine)) == {"success": True}
    assert _json(handlers.certificate_status(_request(route_params=route), engine))["status"] == "REVOKED"
    assert handlers.revoke_certificate(_request("POST", route_params=route), engine).status_code == 409
    assert handlers.revoke_certificate(_request("POST", route_params={"certId": "missing"}), engine).status_code == 404


# --- Operator routes ---


def test_ssl_renewal_requires_bearer_secret(engine):
    assert handlers.ssl_renewal(_request("POST"), engine).status_code == 401
    wrong = _request("POST", headers={"Authorization": "Bearer nope"})
    assert handlers.ssl_renewal(wrong, engine).status_code == 401


def test_ssl_renewal_runs_batch_and_reports_health(engine):
    auth = {"Authorization": "Bearer operator-secret"}

    run = handlers.ssl_renewal(_request("POST", headers=auth), engine)
    health = handlers.ssl_renewal(_request("GET", headers=auth, params={"action": "health"}), engine)

    assert _json(run) == {"success": True, "checked": 0, "renewed": 0, "failed": 0, "errors": []}
    assert _json(health)["total"] == 0


def test_internal_cert_bundle(engine, domain):
    info = engine.issuance.initiate_dns01(domain.id, domain.hostname)
    engine.issuance.complete_dns01(info.cert_id)
    route = {"domain": "shop.example.com"}

    assert handlers.internal_cert_bundle(_request(route_params=route), engine).status_code == 401
    resp = handlers.internal_cert_bundle(
        _request(route_params=route, headers={"X-Internal-Secret": "operator-secret"}), engine
    )
    assert resp.status_code == 200
    assert "PRIVATE KEY" in _json(resp)["privateKey"]

    missing = _request(route_params={"domain": "none.example.com"}, headers={"X-Internal-Secret": "operator-secret"})
    assert handlers.internal_cert_bundle(missing, engine).status_code == 404


def test_operator_routes_unconfigured_secret(engine):
    engine.config = dataclasses.replace(engine.config, internal_api_secret=None)

    resp = handlers.ssl_renewal(_request("POST", headers={"Authorization": "Bearer anything"}), engine)
    assert resp.status_code == 503


# --- HTTP-01 challenge serving ---


def test_acme_challenge_serves_key_authorization(engine, domain):
    cert_id = engine.issuance.initiate_http01(domain.id, domain.hostname)
    cert = engine.store.get_certificate(cert_id)

    resp = handlers.acme_challenge(
        _request(headers={"Host": "shop.example.com:80"}, route_params={"token": cert.challenge_token}),
        engine,
    )
    assert resp.status_code == 200
    assert resp.get_body().decode() == cert.challenge_key_auth
    assert resp.mimetype == "text/plain"

    other = handlers.acme_challenge(
        _request(headers={"Host": "other.example.com"}, route_params={"token": cert.challenge_token}), engine
    )
    assert other.status_code == 404
