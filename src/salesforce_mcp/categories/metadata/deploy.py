"""
Deploy orchestration for metadata components.

Two paths, chosen by the transport selector:
- sync: one Tooling sObject upsert per component, fanned out on a bounded
  thread pool and joined before aggregation
- archive: all components zipped with a package.xml, submitted once to the
  Metadata deployRequest endpoint and polled to a terminal state

Check-only (validate-only) and multi-component rollback-on-error batches always take the
archive path.
"""

import io
import json
import logging
import zipfile
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ...client import SalesforceClient
from ...config import Settings
from ...errors import DeployTimeoutError, SalesforceMCPError, UpstreamError, ValidationError
from ...models import (
    AggregatedResult,
    AsyncJob,
    ComponentDescriptor,
    ComponentOutcome,
    JobState,
    OperationOptions,
    OutcomeKind,
)
from ...polling import BackoffPolicy, Deadline, poll_job
from ._shared import (
    build_id_query,
    build_package_xml,
    component_files,
    tooling_payload,
    type_info,
)
from .aggregate import aggregate
from .transport import Transport, select_transport

logger = logging.getLogger(__name__)

NOT_PROCESSED = "Component was not processed by the platform"


# ============================================================================
# Shared archive deploy (also used by deploy-bundle)
# ============================================================================

def build_archive(files: Dict[str, Any]) -> bytes:
    """Zip path -> content (str or bytes) in memory."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(files):
            zf.writestr(path, files[path])
    return buf.getvalue()


def deploy_options_for(options: OperationOptions) -> Dict[str, Any]:
    return {
        "checkOnly": options.check_only,
        "rollbackOnError": options.rollback_on_error,
        "singlePackage": True,
        "testLevel": options.test_level,
    }


def new_deadline(options: OperationOptions, settings: Settings) -> Deadline:
    return Deadline(settings.timeout_ms if options.timeout is None else options.timeout)


def backoff_for(settings: Settings) -> BackoffPolicy:
    return BackoffPolicy(settings.poll_initial_interval, settings.poll_max_interval)


def run_archive_deploy(
    client: SalesforceClient,
    files: Dict[str, Any],
    options: OperationOptions,
    settings: Settings,
    deadline: Deadline,
    api_version: str,
) -> AsyncJob:
    """Submit one archive deploy and poll it to completion.

    Raises:
        DeployTimeoutError: polling ran out of time; the error carries the job id
        UpstreamError: submission or status call failed; carries the job id once submitted
    """
    archive = build_archive(files)
    logger.info(
        "Submitting archive deploy: %d files, %d bytes, checkOnly=%s, rollbackOnError=%s",
        len(files), len(archive), options.check_only, options.rollback_on_error,
    )
    submission = client.deploy_archive(archive, deploy_options_for(options), api_version)

    job = AsyncJob(id=submission["id"])
    initial = submission.get("deployResult") or {}
    job.observe(initial.get("status") or "Pending", initial)

    def refresh(j: AsyncJob) -> None:
        result = client.deploy_status(j.id, api_version)
        j.observe(result.get("status"), result)

    try:
        return poll_job(job, refresh, deadline, backoff_for(settings))
    except UpstreamError as e:
        # The deploy may still commit; the caller needs the id to follow up
        if e.job_id is None:
            e.job_id = job.id
        raise


# ============================================================================
# Deploy result parsing
# ============================================================================

def as_list(value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    return list(value)


def problem_text(failure: Dict[str, Any]) -> str:
    problem = failure.get("problem") or "Unknown problem"
    line = failure.get("lineNumber")
    if line:
        return f"Line {line}, Col {failure.get('columnNumber') or 0}: {problem}"
    return problem


def _test_failures(details: Dict[str, Any]) -> List[str]:
    run_tests = details.get("runTestResult") or {}
    messages = []
    for failure in as_list(run_tests.get("failures")):
        name = ".".join(p for p in (failure.get("name"), failure.get("methodName")) if p)
        messages.append(f"{name}: {failure.get('message', 'test failed')}")
    return messages


def outcomes_from_deploy_result(
    descriptors: Sequence[ComponentDescriptor], result: Dict[str, Any]
) -> List[ComponentOutcome]:
    """One outcome per descriptor from a deployResult payload.

    Components missing from both success and failure lists (early abort)
    become failures with a synthesized "not processed" error.
    """
    details = result.get("details") or {}
    successes: Dict[Tuple[str, str], Dict[str, Any]] = {}
    failures: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)

    for entry in as_list(details.get("componentSuccesses")):
        successes[(entry.get("componentType") or "", entry.get("fullName") or "")] = entry
    for entry in as_list(details.get("componentFailures")):
        failures[(entry.get("componentType") or "", entry.get("fullName") or "")].append(entry)

    status = result.get("status")
    deploy_failed = status in ("Failed", "Canceled")
    deploy_message = result.get("errorMessage")
    test_messages = _test_failures(details)

    outcomes = []
    for d in descriptors:
        key = d.key
        if key in failures:
            message = "; ".join(problem_text(f) for f in failures[key])
            outcomes.append(ComponentOutcome.failed(d, OutcomeKind.VALIDATION_ERROR, message))
        elif key in successes and not (deploy_failed and not failures):
            entry = successes[key]
            outcomes.append(ComponentOutcome.ok(
                d,
                metadata={
                    k: entry.get(k) for k in ("created", "changed", "deleted", "fileName")
                    if entry.get(k) is not None
                },
                id=entry.get("id") or None,
            ))
        elif key in successes:
            # Compiled, but the deploy as a whole failed (tests, cancel)
            reason = "; ".join(test_messages) or deploy_message or f"Deployment {status}"
            outcomes.append(ComponentOutcome.failed(d, OutcomeKind.UPSTREAM_ERROR, f"Not deployed: {reason}"))
        else:
            reason = f"{NOT_PROCESSED}: {deploy_message}" if deploy_message else NOT_PROCESSED
            outcomes.append(ComponentOutcome.failed(d, OutcomeKind.UPSTREAM_ERROR, reason))
    return outcomes


# ============================================================================
# Sync path
# ============================================================================

def _outcome_for_error(d: ComponentDescriptor, error: SalesforceMCPError) -> ComponentOutcome:
    if isinstance(error, ValidationError):
        return ComponentOutcome.failed(d, OutcomeKind.VALIDATION_ERROR, error.message)
    if isinstance(error, UpstreamError) and error.status_code == 400:
        # The platform rejected the component itself (compile / field errors)
        return ComponentOutcome.failed(d, OutcomeKind.VALIDATION_ERROR, error.message)
    return ComponentOutcome.failed(d, OutcomeKind.UPSTREAM_ERROR, error.message)


def _deploy_one(client: SalesforceClient, d: ComponentDescriptor, api_version: str) -> ComponentOutcome:
    info = type_info(d.type)
    sobject = info.tooling_object or d.type
    try:
        existing = client.query_all(build_id_query(d), tooling=True, api_version=api_version)
        existing_id = existing[0].get("Id") if existing else None
        payload = tooling_payload(d, api_version, existing=bool(existing_id))

        if existing_id:
            client.tooling_update(sobject, existing_id, payload, api_version)
            record_id = existing_id
        else:
            created = client.tooling_create(sobject, payload, api_version)
            record_id = created.get("id")

        logger.info("Deployed %s (%s)", d.label, "updated" if existing_id else "created")
        return ComponentOutcome.ok(d, metadata={"created": not existing_id, "changed": True}, id=record_id)
    except SalesforceMCPError as e:
        logger.warning("Deploy of %s failed: %s", d.label, e.message)
        return _outcome_for_error(d, e)


def deploy_sync(
    client: SalesforceClient,
    descriptors: Sequence[ComponentDescriptor],
    api_version: str,
    max_concurrency: int,
) -> List[ComponentOutcome]:
    """Deploy components one call each, bounded fan-out, results in input order."""
    if not descriptors:
        return []
    workers = max(1, min(max_concurrency, len(descriptors)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sf-deploy") as pool:
        futures = [pool.submit(_deploy_one, client, d, api_version) for d in descriptors]
        return [f.result() for f in futures]


# ============================================================================
# Public operation
# ============================================================================

def _estimate_size(descriptors: Sequence[ComponentDescriptor]) -> int:
    total = 0
    for d in descriptors:
        if isinstance(d.metadata, str):
            total += len(d.metadata.encode("utf-8"))
        elif d.metadata is not None:
            total += len(json.dumps(d.metadata, default=str).encode("utf-8"))
    return total


def deploy_components(
    client: SalesforceClient,
    components: Sequence[ComponentDescriptor],
    options: OperationOptions,
    settings: Settings,
    deadline: Optional[Deadline] = None,
) -> AggregatedResult:
    """Deploy normalized components and aggregate per-component outcomes."""
    api_version = client.api_version(options.api_version)
    deadline = deadline or new_deadline(options, settings)
    transport = select_transport(
        "deploy", len(components), settings, options, body_size=_estimate_size(components)
    )
    logger.info("Deploying %d component(s) via %s transport", len(components), transport.value)

    # Validate payloads locally before any remote call
    files_by_key: Dict[Tuple[str, str], Dict[str, Any]] = {}
    local_failures: Dict[Tuple[str, str], ComponentOutcome] = {}
    for d in components:
        try:
            if d.metadata is None:
                raise ValidationError(f"{d.label} has no metadata to deploy", component=d.full_name)
            if transport is Transport.ARCHIVE:
                files_by_key[d.key] = component_files(d, api_version)
            else:
                tooling_payload(d, api_version, existing=False)
        except ValidationError as e:
            local_failures[d.key] = ComponentOutcome.failed(d, OutcomeKind.VALIDATION_ERROR, e.message)

    extra = {"transport": transport.value, "check_only": options.check_only}

    if local_failures and options.rollback_on_error:
        first = next(iter(local_failures.values()))
        outcomes = [
            local_failures.get(d.key) or ComponentOutcome.failed(
                d,
                OutcomeKind.VALIDATION_ERROR,
                f"{NOT_PROCESSED}: batch aborted because {first.type}:{first.component} failed validation",
            )
            for d in components
        ]
        return aggregate(outcomes, "deploy", api_version, len(components), True, **extra)

    pending = [d for d in components if d.key not in local_failures]
    remote: Dict[Tuple[str, str], ComponentOutcome] = {}

    if pending and transport is Transport.SYNC:
        for d, outcome in zip(pending, deploy_sync(client, pending, api_version, settings.max_concurrency)):
            remote[d.key] = outcome

    elif pending:
        files: Dict[str, Any] = {}
        members: Dict[str, List[str]] = defaultdict(list)
        for d in pending:
            files.update(files_by_key[d.key])
            members[d.type].append(d.full_name)
        files["package.xml"] = build_package_xml(members, api_version)

        try:
            job = run_archive_deploy(client, files, options, settings, deadline, api_version)
        except DeployTimeoutError as e:
            logger.warning("Deploy timed out: %s", e.message)
            outcomes = [
                local_failures.get(d.key)
                or ComponentOutcome.failed(d, OutcomeKind.DEPLOY_TIMEOUT, e.message)
                for d in components
            ]
            return aggregate(
                outcomes, "deploy", api_version, len(components), False,
                job_id=e.job_id, timed_out=True, status="Timeout", **extra,
            )
        except UpstreamError as e:
            logger.warning("Deploy failed upstream (job %s): %s", e.job_id or "not submitted", e.message)
            outcomes = [
                local_failures.get(d.key)
                or ComponentOutcome.failed(d, OutcomeKind.UPSTREAM_ERROR, e.message)
                for d in components
            ]
            # Once submitted the platform decides; no rollback can be claimed here
            return aggregate(
                outcomes, "deploy", api_version, len(components), options.rollback_on_error and not e.job_id,
                job_id=e.job_id, status="Unknown" if e.job_id else "NotSubmitted", **extra,
            )

        for d, outcome in zip(pending, outcomes_from_deploy_result(pending, job.payload)):
            remote[d.key] = outcome
        extra.update(job_id=job.id, status=job.platform_status)
        if job.state is not JobState.SUCCEEDED:
            logger.warning("Deploy %s ended %s", job.id, job.platform_status)

    outcomes = [local_failures.get(d.key) or remote[d.key] for d in components]
    return aggregate(outcomes, "deploy", api_version, len(components), options.rollback_on_error, **extra)


def check_deploy_status(client: SalesforceClient, job_id: str, api_version: Optional[str] = None) -> Dict[str, Any]:
    """Current state of a previously submitted archive deploy."""
    if not job_id or not str(job_id).strip():
        raise ValidationError("jobId is required")
    result = client.deploy_status(job_id, api_version)
    details = result.get("details") or {}
    status = result.get("status")
    return {
        "jobId": job_id,
        "status": status,
        "done": bool(result.get("done")),
        "success": status == "Succeeded",
        "checkOnly": result.get("checkOnly"),
        "numberComponentsDeployed": result.get("numberComponentsDeployed"),
        "numberComponentsTotal": result.get("numberComponentsTotal"),
        "numberComponentErrors": result.get("numberComponentErrors"),
        "errorMessage": result.get("errorMessage"),
        "errors": [
            {
                "type": f.get("componentType"),
                "component": f.get("fullName"),
                "error": problem_text(f),
            }
            for f in as_list(details.get("componentFailures"))
        ],
        "testFailures": _test_failures(details),
    }


__all__ = [
    "deploy_components",
    "deploy_sync",
    "run_archive_deploy",
    "build_archive",
    "outcomes_from_deploy_result",
    "check_deploy_status",
]
