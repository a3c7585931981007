"""
Metadata type catalog via SOAP describeMetadata.
"""

import logging
from typing import Any, Dict, List, Optional
import xml.etree.ElementTree as ET

from ...client import METADATA_NS, SalesforceClient
from ._shared import remember_catalog

logger = logging.getLogger(__name__)

DESCRIBE_TEMPLATE = """    <met:describeMetadata>
      <met:asOfVersion>{api_version}</met:asOfVersion>
    </met:describeMetadata>"""


def _tag(name: str) -> str:
    return f"{{{METADATA_NS}}}{name}"


def _text(elem: ET.Element, name: str) -> Optional[str]:
    value = elem.findtext(_tag(name))
    return value if value else None


def _flag(elem: ET.Element, name: str) -> bool:
    return (elem.findtext(_tag(name)) or "").strip().lower() == "true"


def parse_describe_metadata(root: ET.Element) -> Dict[str, Any]:
    """Turn a describeMetadataResponse envelope into the catalog dict."""
    result = root.find(f".//{_tag('describeMetadataResponse')}/{_tag('result')}")
    if result is None:
        result = root.find(f".//{_tag('result')}")
    if result is None:
        return {"metadataTypes": [], "organizationNamespace": None}

    types: List[Dict[str, Any]] = []
    for obj in result.findall(_tag("metadataObjects")):
        types.append({
            "xmlName": _text(obj, "xmlName"),
            "directoryName": _text(obj, "directoryName"),
            "suffix": _text(obj, "suffix"),
            "inFolder": _flag(obj, "inFolder"),
            "metaFile": _flag(obj, "metaFile"),
            "childXmlNames": [c.text for c in obj.findall(_tag("childXmlNames")) if c.text],
        })
    types.sort(key=lambda t: t["xmlName"] or "")

    return {
        "metadataTypes": types,
        "organizationNamespace": _text(result, "organizationNamespace"),
        "partialSaveAllowed": _flag(result, "partialSaveAllowed"),
        "testRequired": _flag(result, "testRequired"),
    }


def list_metadata_types(client: SalesforceClient, api_version: Optional[str] = None) -> Dict[str, Any]:
    """List the metadata types available in the org."""
    version = client.api_version(api_version)
    root = client.metadata_soap(DESCRIBE_TEMPLATE.format(api_version=version), version)
    catalog = parse_describe_metadata(root)
    remember_catalog(catalog["metadataTypes"])
    logger.info("describeMetadata returned %d types", len(catalog["metadataTypes"]))
    return {"apiVersion": version, **catalog}


__all__ = ["list_metadata_types", "parse_describe_metadata"]
