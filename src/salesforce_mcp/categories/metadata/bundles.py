"""
Bundle deploys: a local LWC / Aura component directory shipped as one archive.

The bundle type comes from the parent folder name (``lwc`` or ``aura``,
as in an SFDX ``force-app/main/default`` tree); when the parent folder is
something else the files decide (``*.js-meta.xml`` -> LWC, ``.cmp``/``.app``
-> Aura).
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ...client import SalesforceClient
from ...config import Settings
from ...errors import DeployTimeoutError, UpstreamError, ValidationError
from ...models import OperationOptions
from ...polling import Deadline
from ._shared import BUNDLE_FOLDERS, build_package_xml, type_info
from .deploy import as_list, problem_text, new_deadline, run_archive_deploy

logger = logging.getLogger(__name__)

AURA_MARKERS = (".cmp", ".app", ".evt", ".intf", ".tokens")


def detect_bundle_type(path: Path) -> str:
    """Metadata type of a bundle directory."""
    folder = path.parent.name
    if folder in BUNDLE_FOLDERS:
        return BUNDLE_FOLDERS[folder]

    names = [p.name for p in path.iterdir() if p.is_file()]
    if any(n.endswith(".js-meta.xml") for n in names):
        return BUNDLE_FOLDERS["lwc"]
    if any(n.endswith(AURA_MARKERS) for n in names):
        return BUNDLE_FOLDERS["aura"]
    raise ValidationError(
        f"Cannot tell bundle type of {path}: expected an lwc/ or aura/ parent folder"
    )


def collect_bundle_files(path: Path, directory: str) -> Dict[str, bytes]:
    """Archive entries for every file under the bundle, skipping dotfiles."""
    files: Dict[str, bytes] = {}
    for file_path in sorted(path.rglob("*")):
        if not file_path.is_file():
            continue
        relative = file_path.relative_to(path)
        if any(part.startswith(".") for part in relative.parts):
            continue
        files[f"{directory}/{path.name}/{relative.as_posix()}"] = file_path.read_bytes()
    return files


def deploy_bundle(
    client: SalesforceClient,
    bundle_path: str,
    options: OperationOptions,
    settings: Settings,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    """Deploy a component bundle directory.

    Args:
        client: Authenticated Salesforce client
        bundle_path: Local directory of the bundle (its name is the bundle name)
        options: checkOnly, rollbackOnError, apiVersion, timeout, testLevel
        settings: Configured polling and timeout defaults

    Returns:
        Dict with success, status, jobId, bundle, type, checkOnly, filesDeployed
        and per-file errors when the platform reports any
    """
    if not bundle_path or not str(bundle_path).strip():
        raise ValidationError("bundlePath is required")

    path = Path(bundle_path).expanduser()
    if not path.exists():
        raise ValidationError(f"Bundle path does not exist: {bundle_path}")
    if not path.is_dir():
        raise ValidationError(f"Bundle path is not a directory: {bundle_path}")

    api_version = client.api_version(options.api_version)
    bundle_type = detect_bundle_type(path)
    name = path.name
    files = collect_bundle_files(path, type_info(bundle_type).directory)
    if not files:
        raise ValidationError(f"Bundle directory is empty: {bundle_path}", component=name)

    files["package.xml"] = build_package_xml({bundle_type: [name]}, api_version)
    logger.info("Deploying %s %s (%d files)", bundle_type, name, len(files) - 1)

    result: Dict[str, Any] = {
        "bundle": name,
        "type": bundle_type,
        "checkOnly": options.check_only,
        "apiVersion": api_version,
        "filesDeployed": len(files) - 1,
    }

    try:
        job = run_archive_deploy(
            client, files, options, settings, deadline or new_deadline(options, settings), api_version
        )
    except DeployTimeoutError as e:
        logger.warning("Bundle deploy timed out: %s", e.message)
        result.update(
            success=False,
            status="Timeout",
            jobId=e.job_id,
            timedOut=True,
            errors=[{"type": bundle_type, "component": name, "error": e.message, "errorKind": e.kind}],
        )
        return result
    except UpstreamError as e:
        logger.warning("Bundle deploy failed upstream (job %s): %s", e.job_id or "not submitted", e.message)
        result.update(
            success=False,
            status="Unknown" if e.job_id else "NotSubmitted",
            jobId=e.job_id,
            errors=[{"type": bundle_type, "component": name, "error": e.message, "errorKind": e.kind}],
        )
        return result

    payload = job.payload
    details = payload.get("details") or {}
    failures = as_list(details.get("componentFailures"))

    result.update(
        success=job.platform_status == "Succeeded" and not failures,
        status=job.platform_status,
        jobId=job.id,
    )
    if failures or payload.get("errorMessage"):
        errors = [
            {
                "type": f.get("componentType") or bundle_type,
                "component": f.get("fullName") or name,
                "fileName": f.get("fileName"),
                "error": problem_text(f),
                "errorKind": "ValidationError",
            }
            for f in failures
        ]
        if not errors:
            errors.append({
                "type": bundle_type,
                "component": name,
                "error": payload["errorMessage"],
                "errorKind": "UpstreamError",
            })
        result["errors"] = errors
    return result


__all__ = ["deploy_bundle", "detect_bundle_type", "collect_bundle_files"]
