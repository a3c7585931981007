"""
Record query and DML.

Small requests go through REST (query + nextRecordsUrl, sObject
Collections in chunks of 200). Requests over the configured thresholds run
as Bulk API 2.0 jobs, polled with the same backoff and deadline as
metadata deploys.
"""

import csv
import io
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..client import SalesforceClient
from ..config import Settings
from ..errors import SalesforceMCPError, UpstreamError, ValidationError
from ..models import AggregatedResult, AsyncJob, ComponentOutcome, JobState, OperationOptions, OutcomeKind
from ..polling import Deadline, poll_job
from .metadata.aggregate import aggregate
from .metadata.deploy import backoff_for, new_deadline
from .metadata.transport import Transport, select_transport

logger = logging.getLogger(__name__)

DML_OPERATIONS = ("insert", "update", "upsert", "delete")
COLLECTIONS_CHUNK = 200
NOT_PROCESSED = "Record was not processed"


# ============================================================================
# Helpers
# ============================================================================

def _strip_attributes(record: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    for key, value in record.items():
        if key == "attributes":
            continue
        if isinstance(value, dict):
            value = _strip_attributes(value)
        cleaned[key] = value
    return cleaned


def parse_csv(text: str) -> List[Dict[str, str]]:
    if not text or not text.strip():
        return []
    return list(csv.DictReader(io.StringIO(text)))


def to_csv(records: Sequence[Dict[str, Any]], columns: Optional[List[str]] = None) -> str:
    if columns is None:
        columns = list(dict.fromkeys(k for r in records for k in r if k != "attributes"))
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for record in records:
        # Bulk API 2.0 reads an empty cell as "no change"; #N/A clears the field
        writer.writerow({k: "#N/A" if record.get(k) is None else record.get(k) for k in columns})
    return buf.getvalue()


def _poll_bulk(
    client: SalesforceClient,
    kind: str,
    job_id: str,
    api_version: str,
    settings: Settings,
    deadline: Deadline,
) -> AsyncJob:
    job = AsyncJob(id=job_id)

    def refresh(j: AsyncJob) -> None:
        info = client.bulk_job(kind, j.id, api_version)
        j.observe(info.get("state"), info)

    poll_job(job, refresh, deadline, backoff_for(settings))
    if job.state is not JobState.SUCCEEDED:
        raise UpstreamError(
            f"Bulk {kind} job {job.id} ended {job.platform_status}: "
            f"{job.payload.get('errorMessage') or 'no error message'}"
        )
    return job


def _parse_records(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError(f"records is not valid JSON: {e.msg}")
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list) or not value:
        raise ValidationError("At least one record is required")
    for index, record in enumerate(value):
        if not isinstance(record, dict):
            raise ValidationError(f"records[{index}] must be an object, got {type(record).__name__}")
    return value


# ============================================================================
# Query
# ============================================================================

def query_records(
    client: SalesforceClient,
    soql: str,
    options: OperationOptions,
    settings: Settings,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    """Run a SOQL query, switching to a Bulk API 2.0 query job for large results."""
    if not soql or not soql.strip():
        raise ValidationError("query is required")
    api_version = client.api_version(options.api_version)

    page = client.query(soql, api_version=api_version)
    total = page.get("totalSize", 0)
    transport = select_transport("query", total, settings, options)
    result: Dict[str, Any] = {"totalSize": total, "apiVersion": api_version}

    if transport is Transport.BULK and not page.get("done", True):
        logger.info("Query returned %d rows; switching to a bulk query job", total)
        job_info = client.bulk_create_query_job(soql, api_version)
        job = _poll_bulk(
            client, "query", job_info["id"], api_version, settings,
            deadline or new_deadline(options, settings),
        )
        records: List[Dict[str, Any]] = []
        locator = None
        while True:
            text, locator = client.bulk_query_results(job.id, locator, api_version)
            records.extend(parse_csv(text))
            if not locator:
                break
        result.update(jobId=job.id, transport=Transport.BULK.value)
    else:
        records = list(page.get("records", []))
        while not page.get("done", True) and page.get("nextRecordsUrl"):
            page = client.query_more(page["nextRecordsUrl"])
            records.extend(page.get("records", []))
        records = [_strip_attributes(r) for r in records]
        result["transport"] = Transport.SYNC.value

    result.update(success=True, recordsReturned=len(records), records=records)
    return result


# ============================================================================
# DML
# ============================================================================

def _record_label(record: Dict[str, Any], index: int, key_field: Optional[str]) -> str:
    if key_field and record.get(key_field):
        return str(record[key_field])
    return str(record.get("Id") or f"records[{index}]")


def _outcome(sobject: str, label: str, success: bool, error: Optional[str] = None,
             kind: OutcomeKind = OutcomeKind.UPSTREAM_ERROR, **extra) -> ComponentOutcome:
    if success:
        return ComponentOutcome(type=sobject, component=label, success=True, **extra)
    return ComponentOutcome(type=sobject, component=label, success=False, kind=kind, error=error, **extra)


def _collection_error(entry: Dict[str, Any]) -> str:
    messages = []
    for err in entry.get("errors") or []:
        text = err.get("message") or err.get("statusCode") or "Unknown error"
        if err.get("statusCode") and err.get("message"):
            text = f"{err['statusCode']}: {err['message']}"
        if err.get("fields"):
            text += f" ({', '.join(err['fields'])})"
        messages.append(text)
    return "; ".join(messages) or "Unknown error"


def _dml_sync(
    client: SalesforceClient,
    operation: str,
    sobject: str,
    records: List[Dict[str, Any]],
    options: OperationOptions,
    api_version: str,
) -> List[ComponentOutcome]:
    key_field = options.external_id_field if operation == "upsert" else None
    outcomes: List[ComponentOutcome] = []
    aborted: Optional[str] = None

    for start in range(0, len(records), COLLECTIONS_CHUNK):
        chunk = records[start:start + COLLECTIONS_CHUNK]
        labels = [_record_label(r, start + i, key_field) for i, r in enumerate(chunk)]

        if aborted:
            outcomes.extend(_outcome(sobject, label, False, f"{NOT_PROCESSED}: {aborted}") for label in labels)
            continue

        try:
            response = client.collections(
                operation, sobject, chunk,
                all_or_none=options.rollback_on_error,
                external_id_field=options.external_id_field,
                api_version=api_version,
            )
        except SalesforceMCPError as e:
            logger.warning("Collections %s on %s failed: %s", operation, sobject, e.message)
            outcomes.extend(_outcome(sobject, label, False, e.message) for label in labels)
            if options.rollback_on_error:
                aborted = f"an earlier batch failed ({e.message})"
            continue

        for i, label in enumerate(labels):
            entry = response[i] if i < len(response) else None
            if entry is None:
                outcomes.append(_outcome(sobject, label, False, NOT_PROCESSED))
            elif entry.get("success"):
                outcomes.append(_outcome(
                    sobject, entry.get("id") or label, True,
                    id=entry.get("id"),
                    metadata={"created": entry.get("created")} if "created" in entry else None,
                ))
            else:
                outcomes.append(_outcome(
                    sobject, label, False, _collection_error(entry), OutcomeKind.VALIDATION_ERROR
                ))

        if options.rollback_on_error and any(not o.success for o in outcomes[start:]):
            aborted = "an earlier batch failed"

    return outcomes


def _dml_bulk(
    client: SalesforceClient,
    operation: str,
    sobject: str,
    records: List[Dict[str, Any]],
    options: OperationOptions,
    settings: Settings,
    api_version: str,
    deadline: Deadline,
) -> AsyncJob:
    columns = ["Id"] if operation == "delete" else None
    job_info = client.bulk_create_ingest_job(sobject, operation, options.external_id_field, api_version)
    job_id = job_info["id"]
    logger.info("Bulk %s job %s: uploading %d %s records", operation, job_id, len(records), sobject)

    client.bulk_upload(job_id, to_csv(records, columns), api_version)
    client.bulk_set_state("ingest", job_id, "UploadComplete", api_version)
    return _poll_bulk(client, "ingest", job_id, api_version, settings, deadline)


def _bulk_outcomes(
    client: SalesforceClient, sobject: str, job_id: str, total: int, api_version: str
) -> List[ComponentOutcome]:
    outcomes: List[ComponentOutcome] = []
    for row in parse_csv(client.bulk_ingest_results(job_id, "successfulResults", api_version)):
        record_id = row.get("sf__Id") or None
        outcomes.append(_outcome(
            sobject, record_id or f"records[{len(outcomes)}]", True,
            id=record_id, metadata={"created": row.get("sf__Created") == "true"},
        ))
    for row in parse_csv(client.bulk_ingest_results(job_id, "failedResults", api_version)):
        label = row.get("sf__Id") or row.get("Id") or f"records[{len(outcomes)}]"
        outcomes.append(_outcome(
            sobject, label, False, row.get("sf__Error") or "Unknown error", OutcomeKind.VALIDATION_ERROR
        ))
    if len(outcomes) < total:
        for row in parse_csv(client.bulk_ingest_results(job_id, "unprocessedrecords", api_version)):
            label = row.get("Id") or f"records[{len(outcomes)}]"
            outcomes.append(_outcome(sobject, label, False, NOT_PROCESSED))
    while len(outcomes) < total:
        outcomes.append(_outcome(sobject, f"records[{len(outcomes)}]", False, NOT_PROCESSED))
    return outcomes[:total]


def dml_records(
    client: SalesforceClient,
    operation: str,
    sobject: str,
    records: Any,
    options: OperationOptions,
    settings: Settings,
    deadline: Optional[Deadline] = None,
) -> AggregatedResult:
    """Insert, update, upsert or delete records and aggregate per-record outcomes."""
    operation = (operation or "").strip().lower()
    if operation not in DML_OPERATIONS:
        raise ValidationError(f"operation must be one of {', '.join(DML_OPERATIONS)}, got {operation!r}")
    if not sobject or not sobject.strip():
        raise ValidationError("sobject is required")

    records = _parse_records(records)
    if operation in ("update", "delete"):
        for index, record in enumerate(records):
            if not record.get("Id"):
                raise ValidationError(f"records[{index}] is missing 'Id' for {operation}")
    if operation == "upsert":
        key_field = options.external_id_field or "Id"
        for index, record in enumerate(records):
            if not record.get(key_field):
                raise ValidationError(f"records[{index}] is missing external id field '{key_field}'")

    api_version = client.api_version(options.api_version)
    transport = select_transport("dml", len(records), settings, options)

    if transport is Transport.BULK:
        if options.rollback_on_error:
            raise ValidationError(
                "rollbackOnError is not supported for bulk DML; "
                "split the request or raise bulkThreshold"
            )
        job = _dml_bulk(
            client, operation, sobject, records, options, settings, api_version,
            deadline or new_deadline(options, settings),
        )
        outcomes = _bulk_outcomes(client, sobject, job.id, len(records), api_version)
        return aggregate(
            outcomes, "records", api_version, len(records),
            transport=transport.value, job_id=job.id, status=job.platform_status,
        )

    if options.rollback_on_error and len(records) > COLLECTIONS_CHUNK:
        # allOrNone only spans a single Collections request
        raise ValidationError(
            f"rollbackOnError supports at most {COLLECTIONS_CHUNK} records per call; "
            f"got {len(records)}"
        )
    outcomes = _dml_sync(client, operation, sobject, records, options, api_version)
    return aggregate(
        outcomes, "records", api_version, len(records), options.rollback_on_error,
        transport=transport.value,
    )


__all__ = ["query_records", "dml_records", "DML_OPERATIONS", "parse_csv", "to_csv"]
