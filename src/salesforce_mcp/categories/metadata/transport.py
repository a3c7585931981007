"""
Transport selection for metadata and record operations.

- sync: per-component Tooling calls / REST query / sObject Collections
- archive: one zip submitted to the Metadata deployRequest endpoint
- bulk: Bulk API 2.0 query or ingest job
"""

from enum import Enum
from typing import Optional

from ...config import Settings
from ...models import OperationOptions


class Transport(str, Enum):
    SYNC = "sync"
    ARCHIVE = "archive"
    BULK = "bulk"


OPERATION_KINDS = ("deploy", "retrieve", "query", "dml")


def _pick(override: Optional[int], default: int) -> int:
    # 0 is a real override (always route off the sync path)
    return default if override is None else override


def select_transport(
    kind: str,
    count: int,
    settings: Settings,
    options: Optional[OperationOptions] = None,
    body_size: int = 0,
    bundle: bool = False,
) -> Transport:
    """Choose the transport for an operation.

    Args:
        kind: One of deploy, retrieve, query, dml
        count: Normalized component count (deploy/retrieve) or record count (query/dml)
        settings: Configured thresholds
        options: Per-call options; thresholds here override settings
        body_size: Serialized payload size in bytes (deploy)
        bundle: True when the request carries a directory/bundle path
    """
    if kind not in OPERATION_KINDS:
        raise ValueError(f"Unknown operation kind: {kind}")
    options = options or OperationOptions()

    if bundle:
        return Transport.ARCHIVE

    if kind == "deploy":
        batch_threshold = _pick(options.batch_threshold, settings.deploy_batch_threshold)
        if options.check_only:
            return Transport.ARCHIVE
        if options.rollback_on_error and count > 1:
            return Transport.ARCHIVE
        if count > batch_threshold:
            return Transport.ARCHIVE
        if body_size > settings.max_request_size:
            return Transport.ARCHIVE
        return Transport.SYNC

    if kind == "retrieve":
        return Transport.SYNC

    if kind == "query":
        threshold = _pick(options.bulk_threshold, settings.bulk_query_threshold)
    else:
        threshold = _pick(options.bulk_threshold, settings.bulk_dml_threshold)
    return Transport.BULK if count > threshold else Transport.SYNC


__all__ = ["Transport", "select_transport", "OPERATION_KINDS"]
