"""
Shared helpers for the metadata tools.

- Component normalization (one descriptor or many -> ordered list)
- Metadata type registry (package folder, file suffix, Tooling query shape)
- Metadata API XML rendering (component files, -meta.xml, package.xml)
"""

import json
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple
import xml.etree.ElementTree as ET

from pydantic import ValidationError as PydanticValidationError

from ...client import METADATA_NS
from ...errors import ValidationError
from ...models import ComponentDescriptor


# ============================================================================
# Component normalization
# ============================================================================

def normalize_components(value: Any) -> List[ComponentDescriptor]:
    """Normalize a single descriptor or a sequence of descriptors to a list.

    Caller order is preserved. Raises ValidationError for an empty sequence,
    an element without ``type``/``fullName``, or a duplicated type+fullName.
    """
    if value is None:
        raise ValidationError("components is required")

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError(f"components is not valid JSON: {e.msg}")

    if isinstance(value, (dict, ComponentDescriptor)):
        items = [value]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ValidationError(
            f"components must be an object or an array of objects, got {type(value).__name__}"
        )

    if not items:
        raise ValidationError("At least one component is required")

    descriptors: List[ComponentDescriptor] = []
    seen = set()
    for index, item in enumerate(items):
        descriptor = _to_descriptor(item, index)
        if descriptor.key in seen:
            raise ValidationError(
                f"components[{index}] duplicates {descriptor.label}",
                component=descriptor.full_name,
            )
        seen.add(descriptor.key)
        descriptors.append(descriptor)

    return descriptors


def _to_descriptor(item: Any, index: int) -> ComponentDescriptor:
    if isinstance(item, ComponentDescriptor):
        item = item.model_dump(by_alias=True)
    if not isinstance(item, dict):
        raise ValidationError(f"components[{index}] must be an object, got {type(item).__name__}")

    for field in ("type", "fullName"):
        raw = item.get(field)
        if field == "fullName" and raw is None:
            raw = item.get("full_name")
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(f"components[{index}] is missing '{field}'")

    try:
        return ComponentDescriptor.model_validate(item)
    except PydanticValidationError as e:
        raise ValidationError(f"components[{index}] is invalid: {e.errors()[0].get('msg')}")


# ============================================================================
# Metadata type registry
# ============================================================================

class TypeInfo(NamedTuple):
    """How one metadata type is laid out on disk and read through Tooling."""

    directory: str
    suffix: Optional[str]
    tooling_object: Optional[str] = None
    name_field: str = "DeveloperName"
    body_field: Optional[str] = None
    fields: Tuple[str, ...] = ("Id",)
    meta_file: bool = False
    bundle: bool = False


METADATA_TYPES: Dict[str, TypeInfo] = {
    "ApexClass": TypeInfo(
        "classes", "cls", "ApexClass", "Name", "Body",
        ("Id", "Name", "ApiVersion", "Status", "LengthWithoutComments", "NamespacePrefix", "LastModifiedDate"),
        meta_file=True,
    ),
    "ApexTrigger": TypeInfo(
        "triggers", "trigger", "ApexTrigger", "Name", "Body",
        ("Id", "Name", "ApiVersion", "Status", "TableEnumOrId", "LastModifiedDate"),
        meta_file=True,
    ),
    "ApexPage": TypeInfo(
        "pages", "page", "ApexPage", "Name", "Markup",
        ("Id", "Name", "MasterLabel", "ApiVersion", "ControllerType", "LastModifiedDate"),
        meta_file=True,
    ),
    "ApexComponent": TypeInfo(
        "components", "component", "ApexComponent", "Name", "Markup",
        ("Id", "Name", "MasterLabel", "ApiVersion", "LastModifiedDate"),
        meta_file=True,
    ),
    "StaticResource": TypeInfo(
        "staticresources", "resource", "StaticResource", "Name", None,
        ("Id", "Name", "ContentType", "CacheControl", "LastModifiedDate"),
        meta_file=True,
    ),
    "LightningComponentBundle": TypeInfo(
        "lwc", None, "LightningComponentBundle", "DeveloperName", None,
        ("Id", "DeveloperName", "ApiVersion", "IsExposed", "LastModifiedDate"),
        bundle=True,
    ),
    "AuraDefinitionBundle": TypeInfo(
        "aura", None, "AuraDefinitionBundle", "DeveloperName", None,
        ("Id", "DeveloperName", "ApiVersion", "Description", "LastModifiedDate"),
        bundle=True,
    ),
    "CustomObject": TypeInfo("objects", "object", "CustomObject", "DeveloperName"),
    "Layout": TypeInfo("layouts", "layout", "Layout", "Name"),
    "Flow": TypeInfo("flows", "flow", "Flow", "Definition.DeveloperName"),
    "PermissionSet": TypeInfo("permissionsets", "permissionset", "PermissionSet", "Name"),
    "Profile": TypeInfo("profiles", "profile", "Profile", "Name"),
    "CustomTab": TypeInfo("tabs", "tab", "CustomTab", "DeveloperName"),
    "CustomApplication": TypeInfo("applications", "app", "CustomApplication", "DeveloperName"),
    "CustomLabels": TypeInfo("labels", "labels", None),
    "EmailTemplate": TypeInfo("email", "email", "EmailTemplate", "DeveloperName", meta_file=True),
    "RemoteSiteSetting": TypeInfo("remoteSiteSettings", "remoteSite", "RemoteProxy", "SiteName"),
    "CustomMetadata": TypeInfo("customMetadata", "md", None),
    "ValidationRule": TypeInfo("objects", "validationRule", "ValidationRule", "ValidationName"),
    "Workflow": TypeInfo("workflows", "workflow", None),
}

# Bundle folder name -> metadata type
BUNDLE_FOLDERS = {
    "lwc": "LightningComponentBundle",
    "aura": "AuraDefinitionBundle",
}

# Keys accepted in a descriptor's metadata for the source body
BODY_KEYS = ("body", "Body", "content", "markup", "Markup")

# Custom suffixes stripped from fullName when matching DeveloperName
_CUSTOM_SUFFIXES = ("__c", "__mdt", "__e", "__b", "__x")

# Catalog entries learned from describeMetadata: xmlName -> (directoryName, suffix)
_catalog: Dict[str, Tuple[str, Optional[str]]] = {}


def remember_catalog(metadata_types: Iterable[Dict[str, Any]]) -> None:
    """Record directory/suffix of types reported by describeMetadata."""
    for entry in metadata_types:
        name = entry.get("xmlName")
        if name and entry.get("directoryName"):
            _catalog[name] = (entry["directoryName"], entry.get("suffix"))


def type_info(metadata_type: str) -> TypeInfo:
    """Return the registry entry for a type, falling back to the describe catalog."""
    info = METADATA_TYPES.get(metadata_type)
    if info:
        return info
    if metadata_type in _catalog:
        directory, suffix = _catalog[metadata_type]
        return TypeInfo(directory, suffix, metadata_type)
    # Package folders are the lower-camel plural of the type name
    directory = metadata_type[:1].lower() + metadata_type[1:] + "s"
    return TypeInfo(directory, metadata_type[:1].lower() + metadata_type[1:], metadata_type)


def platform_folder(metadata_type: str) -> str:
    return type_info(metadata_type).directory


def platform_extension(metadata_type: str) -> Optional[str]:
    return type_info(metadata_type).suffix


def component_file_path(metadata_type: str, full_name: str) -> str:
    """Relative path of a component inside a package directory."""
    info = type_info(metadata_type)
    if info.suffix:
        return f"{info.directory}/{full_name}.{info.suffix}"
    return f"{info.directory}/{full_name}"


def developer_name(full_name: str) -> str:
    for suffix in _CUSTOM_SUFFIXES:
        if full_name.endswith(suffix):
            return full_name[: -len(suffix)]
    return full_name


def soql_quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def build_lookup_query(descriptor: ComponentDescriptor, include_body: bool) -> str:
    """Tooling SOQL that reads one component by name."""
    info = type_info(descriptor.type)
    sobject = info.tooling_object or descriptor.type

    if info.body_field:
        fields = list(info.fields)
        if include_body:
            fields.append(info.body_field)
        name_value = descriptor.full_name
    else:
        fields = list(info.fields)
        # FullName/Metadata may only be selected when the query returns one row
        if include_body:
            fields += ["FullName", "Metadata"]
        name_value = (
            developer_name(descriptor.full_name)
            if info.name_field.endswith("DeveloperName")
            else descriptor.full_name
        )

    return (
        f"SELECT {', '.join(dict.fromkeys(fields))} FROM {sobject} "
        f"WHERE {info.name_field} = {soql_quote(name_value)} LIMIT 1"
    )


def build_id_query(descriptor: ComponentDescriptor) -> str:
    info = type_info(descriptor.type)
    sobject = info.tooling_object or descriptor.type
    name_value = descriptor.full_name
    if not info.body_field and info.name_field.endswith("DeveloperName"):
        name_value = developer_name(name_value)
    return f"SELECT Id FROM {sobject} WHERE {info.name_field} = {soql_quote(name_value)} LIMIT 1"


# ============================================================================
# Descriptor payloads
# ============================================================================

def extract_body(descriptor: ComponentDescriptor) -> Optional[str]:
    """Source body of a body-bearing component (Apex, Visualforce)."""
    metadata = descriptor.metadata
    if isinstance(metadata, str):
        return metadata
    if isinstance(metadata, dict):
        for key in BODY_KEYS:
            if isinstance(metadata.get(key), str):
                return metadata[key]
    return None


def metadata_fields(descriptor: ComponentDescriptor) -> Dict[str, Any]:
    """Descriptor metadata without body keys or fullName."""
    if not isinstance(descriptor.metadata, dict):
        return {}
    return {
        k: v for k, v in descriptor.metadata.items()
        if k not in BODY_KEYS and k not in ("fullName", "FullName")
    }


def tooling_payload(descriptor: ComponentDescriptor, api_version: str, existing: bool) -> Dict[str, Any]:
    """Tooling sObject body used by the synchronous deploy path."""
    info = type_info(descriptor.type)
    fields = metadata_fields(descriptor)

    if info.body_field:
        body = extract_body(descriptor)
        if body is None:
            raise ValidationError(
                f"{descriptor.label} requires metadata.body",
                component=descriptor.full_name,
            )
        payload: Dict[str, Any] = {info.body_field: body}
        if not existing:
            payload[info.name_field] = descriptor.full_name
            if info.body_field == "Markup":
                payload["MasterLabel"] = fields.get("label", descriptor.full_name)
        # Capitalized keys are Tooling field names (TableEnumOrId, ApiVersion, ...)
        payload.update({k: v for k, v in fields.items() if k[:1].isupper()})
        return payload

    payload = {"Metadata": fields}
    if not existing:
        payload["FullName"] = descriptor.full_name
    return payload


# ============================================================================
# Metadata API XML
# ============================================================================

def _append(parent: ET.Element, tag: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, list):
        for item in value:
            _append(parent, tag, item)
        return
    child = ET.SubElement(parent, tag)
    if isinstance(value, dict):
        for key, sub in value.items():
            _append(child, key, sub)
    elif isinstance(value, bool):
        child.text = "true" if value else "false"
    else:
        child.text = str(value)


def _serialize(root: ET.Element) -> str:
    ET.indent(root, space="    ")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"


def metadata_to_xml(metadata_type: str, metadata: Dict[str, Any]) -> str:
    """Render a Metadata dict (Tooling JSON shape) as a Metadata API document."""
    root = ET.Element(metadata_type, {"xmlns": METADATA_NS})
    for key, value in metadata.items():
        if key in ("fullName", "FullName", "urls"):
            continue
        _append(root, key, value)
    return _serialize(root)


def meta_xml(descriptor: ComponentDescriptor, api_version: str) -> str:
    """Companion -meta.xml for body-bearing components."""
    fields = {k: v for k, v in metadata_fields(descriptor).items() if k[:1].islower()}
    fields.setdefault("apiVersion", api_version)
    if descriptor.type in ("ApexClass", "ApexTrigger"):
        fields.setdefault("status", "Active")
    if descriptor.type in ("ApexPage", "ApexComponent"):
        fields.setdefault("label", descriptor.full_name)
    return metadata_to_xml(descriptor.type, fields)


def build_package_xml(members: Dict[str, List[str]], api_version: str) -> str:
    root = ET.Element("Package", {"xmlns": METADATA_NS})
    for metadata_type in sorted(members):
        types_elem = ET.SubElement(root, "types")
        for member in members[metadata_type]:
            ET.SubElement(types_elem, "members").text = member
        ET.SubElement(types_elem, "name").text = metadata_type
    ET.SubElement(root, "version").text = api_version
    return _serialize(root)


def component_files(descriptor: ComponentDescriptor, api_version: str) -> Dict[str, str]:
    """Archive entries (path -> content) for one deploy descriptor."""
    info = type_info(descriptor.type)
    if info.bundle:
        raise ValidationError(
            f"{descriptor.label} is a bundle; use deploy-bundle with a directory path",
            component=descriptor.full_name,
        )

    path = component_file_path(descriptor.type, descriptor.full_name)
    if info.body_field:
        body = extract_body(descriptor)
        if body is None:
            raise ValidationError(
                f"{descriptor.label} requires metadata.body",
                component=descriptor.full_name,
            )
        files = {path: body}
        if info.meta_file:
            files[f"{path}-meta.xml"] = meta_xml(descriptor, api_version)
        return files

    if isinstance(descriptor.metadata, str):
        return {path: descriptor.metadata}
    return {path: metadata_to_xml(descriptor.type, metadata_fields(descriptor))}


def retrieved_content(metadata_type: str, record: Dict[str, Any]) -> Optional[str]:
    """File content for a retrieved Tooling record, or None if nothing to write."""
    info = type_info(metadata_type)
    if info.body_field and isinstance(record.get(info.body_field), str):
        return record[info.body_field]
    if isinstance(record.get("Metadata"), dict):
        return metadata_to_xml(metadata_type, record["Metadata"])
    return None


__all__ = [
    "normalize_components",
    "TypeInfo",
    "METADATA_TYPES",
    "BUNDLE_FOLDERS",
    "remember_catalog",
    "type_info",
    "platform_folder",
    "platform_extension",
    "component_file_path",
    "build_lookup_query",
    "build_id_query",
    "extract_body",
    "tooling_payload",
    "metadata_to_xml",
    "meta_xml",
    "build_package_xml",
    "component_files",
    "retrieved_content",
]
