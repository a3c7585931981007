"""
Metadata category for Salesforce MCP Server.

This category contains tools for org metadata:
- Catalog (describeMetadata)
- Retrieve (Tooling reads, optional save to a package directory)
- Deploy (sync Tooling upserts or one archive deploy)
- Bundle deploy (LWC / Aura directories)
"""

from ._shared import normalize_components
from .aggregate import aggregate
from .bundles import deploy_bundle
from .catalog import list_metadata_types
from .deploy import check_deploy_status, deploy_components
from .retrieve import retrieve_components
from .transport import Transport, select_transport

__all__ = [
    'normalize_components',
    'aggregate',
    'deploy_bundle',
    'list_metadata_types',
    'check_deploy_status',
    'deploy_components',
    'retrieve_components',
    'Transport',
    'select_transport',
]
