"""
Thin Salesforce HTTP client built on httpx.

Wraps the REST, Tooling, Metadata (REST deployRequest + SOAP) and Bulk API 2.0
endpoints the tools need. Every call goes through ``request()``, which
attaches the cached credential and, on a transport error or an expired
session, refreshes the credential once and retries. A second consecutive
failure is raised as UpstreamError.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
import xml.etree.ElementTree as ET

import httpx

from .auth import Credential, CredentialProvider
from .config import Settings
from .errors import UpstreamError

logger = logging.getLogger(__name__)

METADATA_NS = "http://soap.sforce.com/2006/04/metadata"
SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

METADATA_ENVELOPE = """<?xml version="1.0" encoding="utf-8"?>
<env:Envelope xmlns:env="http://schemas.xmlsoap.org/soap/envelope/"
              xmlns:met="http://soap.sforce.com/2006/04/metadata">
  <env:Header>
    <met:SessionHeader>
      <met:sessionId>{session_id}</met:sessionId>
    </met:SessionHeader>
  </env:Header>
  <env:Body>
{body}
  </env:Body>
</env:Envelope>"""


class SalesforceClient:
    """Authenticated access to one Salesforce org."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialProvider,
        http: Optional[httpx.Client] = None,
    ):
        self.settings = settings
        self.credentials = credentials
        self._http = http or httpx.Client(timeout=settings.timeout_ms / 1000)

    def close(self) -> None:
        self._http.close()

    def api_version(self, override: Optional[str] = None) -> str:
        return override or self.settings.api_version

    def data_path(self, api_version: Optional[str] = None) -> str:
        return f"/services/data/v{self.api_version(api_version)}"

    # ========================================================================
    # Core request with one refresh + retry
    # ========================================================================

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        content: Optional[bytes] = None,
        content_for: Optional[Callable[[Credential], bytes]] = None,
        files: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        raise_for_status: bool = True,
    ) -> httpx.Response:
        """Send a request relative to the instance URL (absolute URLs pass through)."""
        retried = False
        while True:
            credential = self.credentials.get()
            url = path if path.startswith("http") else f"{credential.instance_url}{path}"
            req_headers = {"Authorization": f"Bearer {credential.access_token}"}
            if headers:
                req_headers.update(headers)
            body = content_for(credential) if content_for else content

            try:
                resp = self._http.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    content=body,
                    files=files,
                    headers=req_headers,
                )
            except httpx.TransportError as e:
                if not retried:
                    logger.warning("%s %s failed (%s); refreshing credential and retrying", method, path, e)
                    self.credentials.refresh(stale=credential)
                    retried = True
                    continue
                raise UpstreamError(f"{method} {path} failed: {e}")

            if _is_session_expired(resp) and not retried:
                logger.info("Session expired on %s %s; refreshing credential", method, path)
                self.credentials.refresh(stale=credential)
                retried = True
                continue

            if raise_for_status and resp.status_code >= 400:
                raise _upstream_error(method, path, resp)
            return resp

    def get_json(self, path: str, **kwargs) -> Any:
        return self.request("GET", path, headers={"Accept": "application/json"}, **kwargs).json()

    # ========================================================================
    # REST / Tooling
    # ========================================================================

    def query(self, soql: str, tooling: bool = False, api_version: Optional[str] = None) -> Dict[str, Any]:
        """Run a SOQL query and return the first page."""
        base = self.data_path(api_version) + ("/tooling" if tooling else "")
        return self.get_json(f"{base}/query", params={"q": soql})

    def query_more(self, next_records_url: str) -> Dict[str, Any]:
        return self.get_json(next_records_url)

    def query_all(self, soql: str, tooling: bool = False, api_version: Optional[str] = None) -> List[Dict[str, Any]]:
        """Run a SOQL query and follow nextRecordsUrl until done."""
        page = self.query(soql, tooling=tooling, api_version=api_version)
        records = list(page.get("records", []))
        while not page.get("done", True) and page.get("nextRecordsUrl"):
            page = self.query_more(page["nextRecordsUrl"])
            records.extend(page.get("records", []))
        return records

    def tooling_create(self, sobject: str, body: Dict[str, Any], api_version: Optional[str] = None) -> Dict[str, Any]:
        path = f"{self.data_path(api_version)}/tooling/sobjects/{sobject}"
        return self.request("POST", path, json_body=body).json()

    def tooling_update(
        self, sobject: str, record_id: str, body: Dict[str, Any], api_version: Optional[str] = None
    ) -> None:
        path = f"{self.data_path(api_version)}/tooling/sobjects/{sobject}/{record_id}"
        self.request("PATCH", path, json_body=body)

    # ========================================================================
    # Metadata API
    # ========================================================================

    def deploy_archive(
        self, zip_bytes: bytes, deploy_options: Dict[str, Any], api_version: Optional[str] = None
    ) -> Dict[str, Any]:
        """Submit a zip to the REST Metadata deployRequest endpoint."""
        path = f"{self.data_path(api_version)}/metadata/deployRequest"
        files = {
            "entity_content": (None, json.dumps({"deployOptions": deploy_options}), "application/json"),
            "file": ("deploy.zip", zip_bytes, "application/zip"),
        }
        data = self.request("POST", path, files=files, headers={"Accept": "application/json"}).json()
        if not data.get("id"):
            raise UpstreamError("Deploy response missing id")
        return data

    def deploy_status(self, job_id: str, api_version: Optional[str] = None) -> Dict[str, Any]:
        path = f"{self.data_path(api_version)}/metadata/deployRequest/{job_id}"
        data = self.get_json(path, params={"includeDetails": "true"})
        return data.get("deployResult", data)

    def metadata_soap(self, operation_xml: str, api_version: Optional[str] = None) -> ET.Element:
        """Call the SOAP Metadata API and return the parsed Body/result element tree."""
        path = f"/services/Soap/m/{self.api_version(api_version)}"

        def build(credential: Credential) -> bytes:
            return METADATA_ENVELOPE.format(
                session_id=credential.access_token, body=operation_xml
            ).encode("utf-8")

        resp = self.request(
            "POST",
            path,
            content_for=build,
            headers={"Content-Type": "text/xml; charset=UTF-8", "SOAPAction": '""'},
            raise_for_status=False,
        )
        try:
            root = ET.fromstring(resp.text)
        except ET.ParseError:
            raise UpstreamError(
                f"Metadata SOAP call returned unparseable response (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )
        fault = root.find(f".//{{{SOAP_ENV_NS}}}Fault")
        if fault is not None or resp.status_code >= 400:
            raise UpstreamError(
                f"Metadata SOAP call failed: {root.findtext('.//faultstring') or resp.status_code}",
                status_code=resp.status_code,
                error_code=root.findtext(".//faultcode"),
            )
        return root

    # ========================================================================
    # sObject Collections
    # ========================================================================

    def collections(
        self,
        operation: str,
        sobject: str,
        records: List[Dict[str, Any]],
        all_or_none: bool = False,
        external_id_field: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Run one sObject Collections call (up to 200 records)."""
        base = f"{self.data_path(api_version)}/composite/sobjects"

        if operation == "delete":
            ids = ",".join(r.get("Id", "") for r in records)
            resp = self.request(
                "DELETE", base, params={"ids": ids, "allOrNone": str(all_or_none).lower()}
            )
            return resp.json()

        body = {
            "allOrNone": all_or_none,
            "records": [{"attributes": {"type": sobject}, **r} for r in records],
        }
        if operation == "insert":
            return self.request("POST", base, json_body=body).json()
        if operation == "update":
            return self.request("PATCH", base, json_body=body).json()
        if operation == "upsert":
            if not external_id_field:
                external_id_field = "Id"
            return self.request("PATCH", f"{base}/{sobject}/{external_id_field}", json_body=body).json()
        raise ValueError(f"Unsupported collections operation: {operation}")

    # ========================================================================
    # Bulk API 2.0
    # ========================================================================

    def bulk_create_query_job(self, soql: str, api_version: Optional[str] = None) -> Dict[str, Any]:
        path = f"{self.data_path(api_version)}/jobs/query"
        return self.request("POST", path, json_body={"operation": "query", "query": soql}).json()

    def bulk_create_ingest_job(
        self,
        sobject: str,
        operation: str,
        external_id_field: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "object": sobject,
            "operation": operation,
            "contentType": "CSV",
            "lineEnding": "LF",
        }
        if operation == "upsert":
            body["externalIdFieldName"] = external_id_field or "Id"
        path = f"{self.data_path(api_version)}/jobs/ingest"
        return self.request("POST", path, json_body=body).json()

    def bulk_upload(self, job_id: str, csv_text: str, api_version: Optional[str] = None) -> None:
        path = f"{self.data_path(api_version)}/jobs/ingest/{job_id}/batches"
        self.request("PUT", path, content=csv_text.encode("utf-8"), headers={"Content-Type": "text/csv"})

    def bulk_set_state(self, kind: str, job_id: str, state: str, api_version: Optional[str] = None) -> Dict[str, Any]:
        path = f"{self.data_path(api_version)}/jobs/{kind}/{job_id}"
        return self.request("PATCH", path, json_body={"state": state}).json()

    def bulk_job(self, kind: str, job_id: str, api_version: Optional[str] = None) -> Dict[str, Any]:
        return self.get_json(f"{self.data_path(api_version)}/jobs/{kind}/{job_id}")

    def bulk_query_results(
        self, job_id: str, locator: Optional[str] = None, api_version: Optional[str] = None
    ) -> Tuple[str, Optional[str]]:
        """Return one CSV page of query results and the next locator (None when done)."""
        params = {"locator": locator} if locator else None
        resp = self.request(
            "GET",
            f"{self.data_path(api_version)}/jobs/query/{job_id}/results",
            params=params,
            headers={"Accept": "text/csv"},
        )
        next_locator = resp.headers.get("Sforce-Locator")
        if not next_locator or next_locator == "null":
            next_locator = None
        return resp.text, next_locator

    def bulk_ingest_results(self, job_id: str, which: str, api_version: Optional[str] = None) -> str:
        """Fetch successfulResults / failedResults / unprocessedrecords as CSV."""
        resp = self.request(
            "GET",
            f"{self.data_path(api_version)}/jobs/ingest/{job_id}/{which}",
            headers={"Accept": "text/csv"},
        )
        return resp.text


# ============================================================================
# Helpers
# ============================================================================

def _is_session_expired(resp: httpx.Response) -> bool:
    if resp.status_code == 401:
        return True
    # SOAP endpoints report an expired session as a 500 fault
    if resp.status_code == 500 and "INVALID_SESSION_ID" in resp.text:
        return True
    return False


def _upstream_error(method: str, path: str, resp: httpx.Response) -> UpstreamError:
    message = f"HTTP {resp.status_code}"
    error_code = None
    try:
        body = resp.json()
    except ValueError:
        body = resp.text[:500]

    # REST errors come back as [{"message": ..., "errorCode": ...}]
    if isinstance(body, list) and body and isinstance(body[0], dict):
        message = body[0].get("message", message)
        error_code = body[0].get("errorCode")
    elif isinstance(body, dict):
        message = body.get("message") or body.get("error_description") or message
        error_code = body.get("errorCode") or body.get("error")
    elif body:
        message = f"{message}: {body}"

    return UpstreamError(
        f"{method} {path} failed: {message}",
        status_code=resp.status_code,
        error_code=error_code,
    )


__all__ = ["SalesforceClient", "METADATA_NS"]
