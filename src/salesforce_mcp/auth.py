"""
Credential provider for the Salesforce MCP Server.

Produces a bearer credential + instance URL from one of two configuration
shapes and caches it process-wide:
- OAuth2 refresh-token exchange against /services/oauth2/token
- SOAP partner login with username + password + security token

Refresh is single-flight: concurrent callers that observe the same stale
credential trigger one token exchange between them.
"""

import logging
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse
from xml.sax.saxutils import escape
import xml.etree.ElementTree as ET

import httpx
from pydantic import BaseModel

from .config import Settings
from .errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

PARTNER_NS = "urn:partner.soap.sforce.com"
SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

LOGIN_ENVELOPE = """<?xml version="1.0" encoding="utf-8"?>
<env:Envelope xmlns:xsd="http://www.w3.org/2001/XMLSchema"
              xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
              xmlns:env="http://schemas.xmlsoap.org/soap/envelope/"
              xmlns:urn="urn:partner.soap.sforce.com">
  <env:Body>
    <urn:login>
      <urn:username>{username}</urn:username>
      <urn:password>{password}</urn:password>
    </urn:login>
  </env:Body>
</env:Envelope>"""


class Credential(BaseModel):
    """Bearer token plus the org's instance endpoint."""

    access_token: str
    instance_url: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CredentialProvider:
    """Acquire, cache and refresh the org credential."""

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._http = http or httpx.Client(timeout=settings.timeout_ms / 1000)
        self._clock = clock
        self._lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self.exchanges = 0

    @property
    def mode(self) -> str:
        if self.settings.uses_oauth:
            return "oauth"
        if self.settings.uses_password:
            return "password"
        return "unconfigured"

    def get(self) -> Credential:
        """Return the cached credential, acquiring one if missing or expired."""
        current = self._credential
        if current is not None and not current.is_expired(self._clock()):
            return current
        return self.refresh(stale=current)

    def refresh(self, stale: Optional[Credential] = None) -> Credential:
        """Replace ``stale`` with a fresh credential.

        If another thread already replaced it, the newer credential is
        returned without a second exchange.
        """
        with self._lock:
            current = self._credential
            if (
                current is not None
                and current is not stale
                and not current.is_expired(self._clock())
            ):
                return current
            self._credential = self._acquire()
            return self._credential

    def invalidate(self) -> None:
        with self._lock:
            self._credential = None

    # ------------------------------------------------------------------
    # Token exchanges
    # ------------------------------------------------------------------

    def _acquire(self) -> Credential:
        if self.settings.uses_oauth:
            credential = self._oauth_refresh()
        elif self.settings.uses_password:
            credential = self._password_login()
        else:
            raise ConfigurationError(
                "Salesforce credentials are not configured. Set SF_CLIENT_ID, SF_CLIENT_SECRET, "
                "SF_REFRESH_TOKEN and SF_INSTANCE_URL, or SF_USERNAME and SF_PASSWORD "
                "(plus SF_SECURITY_TOKEN)."
            )
        self.exchanges += 1
        logger.info("Acquired Salesforce credential via %s for %s", self.mode, credential.instance_url)
        return credential

    def _new_credential(self, token: str, instance_url: str) -> Credential:
        now = self._clock()
        return Credential(
            access_token=token,
            instance_url=instance_url.rstrip("/"),
            issued_at=now,
            expires_at=now + self.settings.session_ttl,
        )

    def _oauth_refresh(self) -> Credential:
        s = self.settings
        url = f"{s.instance_url}/services/oauth2/token"
        try:
            resp = self._http.post(
                url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": s.client_id,
                    "client_secret": s.client_secret,
                    "refresh_token": s.refresh_token,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"OAuth token request failed: {e}")

        if resp.status_code >= 400:
            detail = _json_or_text(resp)
            if isinstance(detail, dict):
                detail = detail.get("error_description") or detail.get("error") or detail
            raise UpstreamError(
                f"OAuth token refresh failed: HTTP {resp.status_code}: {detail}",
                status_code=resp.status_code,
            )

        body = resp.json()
        token = body.get("access_token")
        if not token:
            raise UpstreamError("OAuth token response missing access_token")
        return self._new_credential(token, body.get("instance_url") or s.instance_url)

    def _password_login(self) -> Credential:
        s = self.settings
        url = f"{s.login_url}/services/Soap/u/{s.api_version}"
        envelope = LOGIN_ENVELOPE.format(
            username=escape(s.username or ""),
            password=escape((s.password or "") + (s.security_token or "")),
        )
        try:
            resp = self._http.post(
                url,
                content=envelope.encode("utf-8"),
                headers={"Content-Type": "text/xml; charset=UTF-8", "SOAPAction": "login"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"SOAP login request failed: {e}")

        try:
            root = ET.fromstring(resp.text)
        except ET.ParseError:
            raise UpstreamError(
                f"SOAP login returned unparseable response (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )

        fault = root.find(f".//{{{SOAP_ENV_NS}}}Fault")
        if fault is not None or resp.status_code >= 400:
            message = root.findtext(".//faultstring") or f"HTTP {resp.status_code}"
            raise UpstreamError(
                f"SOAP login failed for {(s.username or '')[:10]}***: {message}",
                status_code=resp.status_code,
                error_code=root.findtext(".//faultcode"),
            )

        session_id = root.findtext(f".//{{{PARTNER_NS}}}sessionId")
        server_url = root.findtext(f".//{{{PARTNER_NS}}}serverUrl")
        if not session_id or not server_url:
            raise UpstreamError("SOAP login response missing sessionId or serverUrl")

        parsed = urlparse(server_url)
        return self._new_credential(session_id, f"{parsed.scheme}://{parsed.netloc}")


def _json_or_text(resp: httpx.Response):
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500]


__all__ = ["Credential", "CredentialProvider"]
