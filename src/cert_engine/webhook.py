"""Agent notifier: tells the TLS-terminating proxy agent about issued and revoked certificates.

Delivery is best-effort. Events are posted from a background thread so the
caller never waits on the agent, and a delivery failure is logged, never
raised; the certificate is issued whether or not the agent has heard.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

CERT_ISSUED = "cert.issued"
CERT_REVOKED = "cert.revoked"
SIGNATURE_HEADER = "X-Chr-Signature"
_DELIVERY_TIMEOUT = 8.0


def sign(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature in the ``sha256=<hex>`` form the agent verifies."""
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class AgentEvent:
    """Revocation events name only the domain; ``cert_id`` and the mode are sent for issuance."""

    event: str
    domain: str
    cert_id: str | None = None


class AgentNotifier:
    """Posts signed events to ``{agent_url}/webhook``. A no-op when URL or secret is unset."""

    def __init__(
        self,
        agent_url: str | None,
        secret: str | None,
        sandbox_mode: bool = False,
        _http_client: httpx.Client | None = None,
    ) -> None:
        self._agent_url = agent_url.rstrip("/") if agent_url else None
        self._secret = secret
        self._mode = "sandbox" if sandbox_mode else "live"
        self._client = _http_client or httpx.Client(timeout=_DELIVERY_TIMEOUT)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agent-notifier")

    @property
    def enabled(self) -> bool:
        return bool(self._agent_url and self._secret)

    def notify(self, event: AgentEvent) -> Future | None:
        """Queue ``event`` for delivery and return immediately."""
        if not self.enabled:
            logger.debug("Agent notifier not configured; dropping %s for %s", event.event, event.domain)
            return None
        return self._executor.submit(self._deliver, event)

    def _deliver(self, event: AgentEvent) -> bool:
        payload = {"event": event.event, "domain": event.domain}
        if event.cert_id is not None:
            payload["certId"] = event.cert_id
            payload["mode"] = self._mode
        body = json.dumps(payload).encode()
        try:
            resp = self._client.post(
                f"{self._agent_url}/webhook",
                content=body,
                headers={
                    "Content-Type": "application/json",
                    SIGNATURE_HEADER: sign(body, self._secret),
                },
            )
        except httpx.HTTPError as e:
            logger.warning("Agent webhook delivery failed for %s: %s", event.domain, e)
            return False

        if resp.is_error:
            logger.warning("Agent returned %d for %s: %s", resp.status_code, event.event, resp.text[:200])
            return False
        logger.info("Notified agent: %s %s", event.event, event.domain)
        return True

    def close(self) -> None:
        """Wait for queued deliveries, then close the HTTP client."""
        self._executor.shutdown(wait=True)
        self._client.close()
