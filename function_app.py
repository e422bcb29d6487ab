"""Azure Functions entry point: HTTP routes and timers bound to the certificate engine."""

import logging

import azure.functions as func

from cert_engine import handlers
from cert_engine.config import load_config
from cert_engine.engine import CertificateEngine, build_engine

app = func.FunctionApp(http_auth_level=func.AuthLevel.FUNCTION)

_engine: CertificateEngine | None = None


def get_engine() -> CertificateEngine:
    """Return the process-wide engine, building it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(load_config())
    return _engine


# Timer trigger: daily renewal batch
@app.function_name("renewal_timer")
@app.timer_trigger(schedule="0 0 2 * * *", arg_name="timer", run_on_startup=False)
def renewal_timer(timer: func.TimerRequest) -> None:
    summary = get_engine().renewal.run_auto_renewal()
    logging.info("Renewal run: %s", summary.to_dict())


# Timer trigger: drain completion jobs left behind by restarts or retries
@app.function_name("completion_timer")
@app.timer_trigger(schedule="0 */1 * * * *", arg_name="timer", run_on_startup=True)
def completion_timer(timer: func.TimerRequest) -> None:
    count = get_engine().worker.drain()
    if count:
        logging.info("Completion drain ran %d job(s)", count)


@app.route(route="certificates", methods=["POST"])
def issue_certificate(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.issue_certificate(req, get_engine())


@app.route(route="certificates/verify-dns", methods=["POST"])
def verify_dns(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.verify_dns(req, get_engine())


@app.route(route="certificates/{certId}", methods=["GET"])
def certificate_status(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.certificate_status(req, get_engine())


@app.route(route="certificates/{certId}/cancel", methods=["POST"])
def cancel_certificate(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.cancel_certificate(req, get_engine())


@app.route(route="certificates/{certId}/renew", methods=["POST"])
def renew_certificate(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.renew_certificate(req, get_engine())


@app.route(route="certificates/{certId}/revoke", methods=["POST"])
def revoke_certificate(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.revoke_certificate(req, get_engine())


@app.route(route="cron/ssl-renewal", methods=["GET", "POST"], auth_level=func.AuthLevel.ANONYMOUS)
def ssl_renewal(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.ssl_renewal(req, get_engine())


@app.route(route="internal/cert/{domain}", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def internal_cert_bundle(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.internal_cert_bundle(req, get_engine())


@app.route(route=".well-known/acme-challenge/{token}", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def acme_challenge(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.acme_challenge(req, get_engine())
