"""
Salesforce MCP Server - FastMCP tools for Salesforce metadata and records.

Tools:
- list-metadata-types: metadata type catalog (describeMetadata)
- retrieve-metadata: read components by type + fullName, optionally save to disk
- deploy-metadata: deploy components (sync Tooling upserts or one archive deploy)
- deploy-bundle: deploy an LWC / Aura bundle directory
- check-deploy-status: state of a submitted archive deploy
- query-records / dml-records: record access through REST or Bulk API 2.0

Every tool returns ``{"_success": True, "data": ...}`` or a structured
``{"_success": False, "error": ..., "errorKind": ...}``; tools never raise.
"""

import logging
import sys
import threading
from typing import Any, Callable, Dict, List, Optional, Union

from fastmcp import FastMCP

from salesforce_mcp.auth import CredentialProvider
from salesforce_mcp.categories.metadata import (
    check_deploy_status,
    deploy_bundle,
    deploy_components,
    list_metadata_types,
    normalize_components,
    retrieve_components,
)
from salesforce_mcp.categories.records import dml_records, query_records
from salesforce_mcp.client import SalesforceClient
from salesforce_mcp.config import Settings
from salesforce_mcp.errors import SalesforceMCPError
from salesforce_mcp.models import AggregatedResult, OperationOptions

logger = logging.getLogger("salesforce_mcp")

mcp = FastMCP(name="Salesforce MCP Server")

ComponentsArg = Union[Dict[str, Any], List[Dict[str, Any]], str]
OptionsArg = Optional[Union[Dict[str, Any], str]]

READ_ONLY = {
    "readOnlyHint": True,   # Tool only reads data, does not modify the org
    "openWorldHint": True,  # Tool accesses the external Salesforce API
}
WRITES = {
    "readOnlyHint": False,
    "destructiveHint": False,
    "openWorldHint": True,
}


# ============================================================================
# Lazy client
# ============================================================================

_state_lock = threading.Lock()
_settings: Optional[Settings] = None
_client: Optional[SalesforceClient] = None


def get_settings() -> Settings:
    global _settings
    with _state_lock:
        if _settings is None:
            _settings = Settings.from_env()
        return _settings


def get_client() -> SalesforceClient:
    """Process-wide client; credentials are acquired on first request, not here."""
    global _client
    settings = get_settings()
    with _state_lock:
        if _client is None:
            _client = SalesforceClient(settings, CredentialProvider(settings))
        return _client


def reset_client() -> None:
    global _settings, _client
    with _state_lock:
        if _client is not None:
            _client.close()
        _settings = None
        _client = None


def run_tool(tool_name: str, fn: Callable[[], Any]) -> Dict[str, Any]:
    """Run a tool body and convert its result or error to the response envelope."""
    try:
        data = fn()
    except SalesforceMCPError as e:
        logger.warning("%s failed (%s): %s", tool_name, e.kind, e.message)
        return e.to_dict()
    except Exception as e:
        logger.exception("%s failed unexpectedly", tool_name)
        return {
            "_success": False,
            "error": f"{tool_name} failed: {e}",
            "errorKind": "InternalError",
        }

    if isinstance(data, AggregatedResult):
        data = data.to_dict()
    return {"_success": True, "data": data}


# ============================================================================
# Metadata tools
# ============================================================================

@mcp.tool(name="list-metadata-types", annotations=READ_ONLY)
def list_metadata_types_tool(apiVersion: Optional[str] = None):
    """
    List the metadata types available in the connected org.

    Args:
        apiVersion: API version to describe (defaults to SF_API_VERSION)

    Returns:
        metadataTypes (xmlName, directoryName, suffix, inFolder, metaFile,
        childXmlNames), apiVersion and organizationNamespace
    """
    logger.info("list-metadata-types called")
    return run_tool(
        "list-metadata-types",
        lambda: list_metadata_types(get_client(), apiVersion),
    )


@mcp.tool(name="retrieve-metadata", annotations=READ_ONLY)
def retrieve_metadata_tool(components: ComponentsArg, options: OptionsArg = None):
    """
    Retrieve one or more metadata components by type and fullName.

    A missing component fails only its own entry; the others are still
    returned.

    Args:
        components: {"type": "ApexClass", "fullName": "HelloWorld"} or a list of them
        options: includeBody (return source), savePath (write files to
            <savePath>/<folder>/<fullName>.<suffix>), apiVersion

    Returns:
        componentsTotal, componentsRetrieved, componentsFailed, results[] and errors[]
    """
    def body():
        descriptors = normalize_components(components)
        opts = OperationOptions.parse(options)
        logger.info("retrieve-metadata called for %d component(s)", len(descriptors))
        return retrieve_components(get_client(), descriptors, opts, get_settings())

    return run_tool("retrieve-metadata", body)


@mcp.tool(name="deploy-metadata", annotations=WRITES)
def deploy_metadata_tool(components: ComponentsArg, options: OptionsArg = None):
    """
    Deploy one or more metadata components.

    Small batches are upserted directly through the Tooling API; large,
    check-only or rollback-on-error batches are zipped and sent as one
    Metadata API deploy, then polled until it finishes or times out.

    Args:
        components: {"type": "ApexClass", "fullName": "HelloWorld",
            "metadata": {"body": "public class HelloWorld {}"}} or a list of them
        options: checkOnly (validate only), rollbackOnError (all or nothing),
            apiVersion, testLevel, timeout (ms), batchThreshold

    Returns:
        checkOnly, componentsTotal, componentsDeployed, componentsFailed,
        results[], errors[]; jobId and status for archive deploys
    """
    def body():
        descriptors = normalize_components(components)
        opts = OperationOptions.parse(options)
        logger.info(
            "deploy-metadata called for %d component(s), checkOnly=%s",
            len(descriptors), opts.check_only,
        )
        return deploy_components(get_client(), descriptors, opts, get_settings())

    return run_tool("deploy-metadata", body)


@mcp.tool(name="deploy-bundle", annotations=WRITES)
def deploy_bundle_tool(bundlePath: str, options: OptionsArg = None):
    """
    Deploy a Lightning Web Component or Aura bundle from a local directory.

    Args:
        bundlePath: Bundle directory, e.g. force-app/main/default/lwc/helloWorld
        options: checkOnly, rollbackOnError, apiVersion, testLevel, timeout (ms)

    Returns:
        success, status, jobId, bundle, type and per-file errors if any
    """
    def body():
        opts = OperationOptions.parse(options)
        logger.info("deploy-bundle called for %s", bundlePath)
        return deploy_bundle(get_client(), bundlePath, opts, get_settings())

    return run_tool("deploy-bundle", body)


@mcp.tool(name="check-deploy-status", annotations=READ_ONLY)
def check_deploy_status_tool(jobId: str, apiVersion: Optional[str] = None):
    """
    Check a Metadata API deploy, e.g. one that timed out in deploy-metadata.

    Args:
        jobId: Deploy request id returned as jobId

    Returns:
        status, done, success, component counts, errors[] and testFailures[]
    """
    return run_tool(
        "check-deploy-status",
        lambda: check_deploy_status(get_client(), jobId, apiVersion),
    )


# ============================================================================
# Record tools
# ============================================================================

@mcp.tool(name="query-records", annotations=READ_ONLY)
def query_records_tool(query: str, options: OptionsArg = None):
    """
    Run a SOQL query. Large result sets are fetched with a Bulk API 2.0 query job.

    Args:
        query: SOQL, e.g. "SELECT Id, Name FROM Account"
        options: apiVersion, bulkThreshold, timeout (ms)

    Returns:
        totalSize, recordsReturned, records[], transport and jobId for bulk queries
    """
    def body():
        opts = OperationOptions.parse(options)
        logger.info("query-records called")
        return query_records(get_client(), query, opts, get_settings())

    return run_tool("query-records", body)


@mcp.tool(name="dml-records", annotations={**WRITES, "destructiveHint": True})
def dml_records_tool(operation: str, sobject: str, records: Union[List[Dict[str, Any]], str], options: OptionsArg = None):
    """
    Insert, update, upsert or delete records.

    Args:
        operation: insert | update | upsert | delete
        sobject: Object API name, e.g. Account
        records: List of field maps (update/delete need Id)
        options: rollbackOnError (all or none), externalIdField (upsert),
            bulkThreshold, apiVersion, timeout (ms)

    Returns:
        recordsTotal, recordsProcessed, recordsFailed, results[], errors[], transport
    """
    def body():
        opts = OperationOptions.parse(options)
        logger.info("dml-records called: %s %s", operation, sobject)
        return dml_records(get_client(), operation, sobject, records, opts, get_settings())

    return run_tool("dml-records", body)


# ============================================================================
# Entry point
# ============================================================================

def configure_logging(level: str = "INFO") -> None:
    # stdout carries JSON-RPC
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(levelname)s] %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("Starting Salesforce MCP Server")
    logger.info("API version: %s", settings.api_version)
    if settings.uses_oauth:
        logger.info("Credentials: OAuth refresh token (%s)", settings.instance_url)
    elif settings.uses_password:
        logger.info("Credentials: username/password (%s***)", (settings.username or "")[:10])
    else:
        logger.warning("No Salesforce credentials configured; tools will fail until SF_* variables are set")

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
