"""
Retrieve metadata components by type + fullName.

Each component is read with its own Tooling query, fanned out on a bounded
thread pool. A missing component or a failed call affects only that
component's outcome. With ``savePath`` the retrieved source is written to
``<savePath>/<folder>/<fullName>.<suffix>``.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ...client import SalesforceClient
from ...config import Settings
from ...errors import SalesforceMCPError, ValidationError
from ...models import AggregatedResult, ComponentDescriptor, ComponentOutcome, OperationOptions, OutcomeKind
from ._shared import build_lookup_query, component_file_path, retrieved_content
from .aggregate import aggregate
from .transport import select_transport

logger = logging.getLogger(__name__)


def _clean_record(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if k != "attributes"}


def save_component(save_path: str, descriptor: ComponentDescriptor, content: str) -> str:
    """Write retrieved content under save_path and return the file path."""
    target = Path(save_path).expanduser() / component_file_path(descriptor.type, descriptor.full_name)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return str(target)


def retrieve_one(
    client: SalesforceClient,
    descriptor: ComponentDescriptor,
    include_body: bool,
    api_version: str,
    save_path: Optional[str] = None,
) -> ComponentOutcome:
    try:
        records = client.query_all(
            build_lookup_query(descriptor, include_body), tooling=True, api_version=api_version
        )
    except SalesforceMCPError as e:
        logger.warning("Retrieve of %s failed: %s", descriptor.label, e.message)
        kind = OutcomeKind.VALIDATION_ERROR if isinstance(e, ValidationError) else OutcomeKind.UPSTREAM_ERROR
        return ComponentOutcome.failed(descriptor, kind, e.message)

    if not records:
        return ComponentOutcome.failed(
            descriptor, OutcomeKind.NOT_FOUND, f"{descriptor.label} not found in org"
        )

    record = _clean_record(records[0])
    if not save_path:
        return ComponentOutcome.ok(descriptor, metadata=record, id=record.get("Id"))

    content = retrieved_content(descriptor.type, record)
    if content is None:
        return ComponentOutcome.failed(
            descriptor,
            OutcomeKind.VALIDATION_ERROR,
            f"{descriptor.label} has no file content to save",
            metadata=record,
        )
    try:
        file_path = save_component(save_path, descriptor, content)
    except OSError as e:
        # No local-IO variant in OutcomeKind; the prefix tells it apart from platform failures
        logger.warning("Could not save %s under %s: %s", descriptor.label, save_path, e)
        return ComponentOutcome.failed(
            descriptor, OutcomeKind.UPSTREAM_ERROR, f"Local write failed: {e}", metadata=record
        )
    logger.info("Saved %s to %s", descriptor.label, file_path)
    return ComponentOutcome.ok(descriptor, metadata=record, id=record.get("Id"), file_path=file_path)


def retrieve_components(
    client: SalesforceClient,
    components: Sequence[ComponentDescriptor],
    options: OperationOptions,
    settings: Settings,
) -> AggregatedResult:
    """Retrieve normalized components and aggregate per-component outcomes."""
    api_version = client.api_version(options.api_version)
    transport = select_transport("retrieve", len(components), settings, options)
    # Saving needs the source, so savePath implies includeBody
    include_body = options.include_body or bool(options.save_path)

    workers = max(1, min(settings.max_concurrency, len(components)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sf-retrieve") as pool:
        futures = [
            pool.submit(retrieve_one, client, d, include_body, api_version, options.save_path)
            for d in components
        ]
        outcomes: List[ComponentOutcome] = [f.result() for f in futures]

    return aggregate(outcomes, "retrieve", api_version, len(components), transport=transport.value)


__all__ = ["retrieve_components", "retrieve_one", "save_component"]
