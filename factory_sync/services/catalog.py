"""
Workflow Catalog Service - The Bundle Reader
Reads bundled workflow JSON files, normalizes them for the n8n API and
derives the metadata (checksum, webhooks, dependencies) the importer needs.
"""
import hashlib
import json
import os
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from factory_sync.core.logging import catalog_logger as logger
from factory_sync.models.schemas import BundledWorkflow, WorkflowDefinition, WorkflowNode

# Node types that call into another workflow by name
SUBWORKFLOW_NODE_TYPES = (
    "n8n-nodes-base.executeWorkflow",
    "@n8n/n8n-nodes-langchain.toolWorkflow",
)

# Entry-point node types and the URL prefix n8n serves them under
WEBHOOK_NODE_PREFIXES = {
    "n8n-nodes-base.webhook": "/webhook",
    "n8n-nodes-base.formTrigger": "/form",
    "@n8n/n8n-nodes-langchain.chatTrigger": "/webhook",
}


class WorkflowFileError(ValueError):
    """A bundled workflow file is not valid JSON or lacks required fields."""
    def __init__(self, filename: str, message: str):
        self.filename = filename
        super().__init__(f"Invalid workflow file {filename}: {message}")


def calculate_checksum(content: str) -> str:
    """SHA-256 of the raw file content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def strip_credentials(nodes: List[WorkflowNode], log_stripped: bool = True) -> List[WorkflowNode]:
    """
    Remove credential references from workflow nodes.

    Credential ids from the source instance don't exist on a fresh n8n and
    make the API answer 400; users wire credentials in the n8n UI afterwards.
    """
    stripped = []
    cleaned = []
    for node in nodes:
        if node.credentials:
            stripped.extend(f"{node.name}:{cred_type}" for cred_type in node.credentials)
            node = node.model_copy(update={"credentials": None})
        cleaned.append(node)

    if log_stripped and stripped:
        logger.info(f"Stripped {len(stripped)} credential reference(s): {', '.join(stripped)}")

    return cleaned


def parse_workflow_file(content: str, filename: str = "<memory>", strip: bool = True) -> WorkflowDefinition:
    """
    Parse workflow JSON into a writable definition.
    The object is built field by field so read-only fields such as tags never
    reach the API.
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise WorkflowFileError(filename, f"{e.msg} at line {e.lineno}, column {e.colno}")

    if not isinstance(data, dict) or not data.get("name") or not isinstance(data.get("nodes"), list):
        raise WorkflowFileError(filename, "missing name or nodes")

    try:
        nodes = [WorkflowNode.model_validate(node) for node in data["nodes"]]
    except ValidationError as e:
        raise WorkflowFileError(filename, f"malformed node: {e.errors()[0].get('msg')}")

    if strip:
        nodes = strip_credentials(nodes)

    return WorkflowDefinition(
        name=data["name"],
        nodes=nodes,
        connections=data.get("connections") or {},
        settings=data.get("settings"),
        staticData=data.get("staticData"),
    )


def _referenced_workflow(parameters: Dict[str, Any]) -> Optional[str]:
    """Workflow reference of an execute-workflow node: plain string or resource locator."""
    ref = parameters.get("workflowId")
    if isinstance(ref, dict):
        ref = ref.get("cachedResultName") or ref.get("value")
    if isinstance(ref, str) and ref.strip():
        return ref.strip()
    return None


def detect_dependencies(definition: WorkflowDefinition) -> List[str]:
    """Names of the workflows this one calls into, in node order."""
    deps: List[str] = []
    for node in definition.nodes:
        if node.type in SUBWORKFLOW_NODE_TYPES:
            name = _referenced_workflow(node.parameters)
            if name and name not in deps:
                deps.append(name)
    return deps


def extract_webhook_paths(definition: WorkflowDefinition) -> List[str]:
    """Externally reachable entry-point paths of a workflow."""
    webhooks = []
    for node in definition.nodes:
        prefix = WEBHOOK_NODE_PREFIXES.get(node.type)
        path = node.parameters.get("path")
        if prefix and isinstance(path, str) and path:
            normalized = path if path.startswith("/") else f"/{path}"
            webhooks.append(f"{prefix}{normalized}")
    return webhooks


def has_credential_references(definition: WorkflowDefinition) -> bool:
    return any(node.credentials for node in definition.nodes)


def node_fingerprint(nodes: List[Any]) -> List[List[str]]:
    """Sorted (name, type) pairs; accepts node models or raw API dicts."""
    pairs = []
    for node in nodes:
        if isinstance(node, WorkflowNode):
            pairs.append([node.name, node.type])
        else:
            pairs.append([node.get("name", ""), node.get("type", "")])
    return sorted(pairs)


def describe_workflow(filename: str, content: str) -> BundledWorkflow:
    """Build bundle metadata for one file; credentials are kept to detect them."""
    definition = parse_workflow_file(content, filename, strip=False)
    return BundledWorkflow(
        filename=filename,
        name=definition.name,
        local_version=calculate_checksum(content),
        webhook_paths=extract_webhook_paths(definition),
        node_count=len(definition.nodes),
        has_credentials=has_credential_references(definition),
        dependencies=detect_dependencies(definition),
        node_types=sorted({node.type for node in definition.nodes}),
        node_fingerprint=node_fingerprint(definition.nodes),
    )


def list_workflow_files(bundle_dir: str) -> List[str]:
    """JSON files of the bundle, lexicographically sorted for determinism."""
    return sorted(f for f in os.listdir(bundle_dir) if f.endswith(".json"))


def get_bundled_workflows(bundle_dir: str) -> List[BundledWorkflow]:
    """
    Read every workflow in the bundle directory.
    Unreadable files are logged and skipped; a missing directory yields [].
    """
    if not os.path.isdir(bundle_dir):
        logger.error(f"Workflows directory not accessible: {bundle_dir}")
        return []

    workflows = []
    for filename in list_workflow_files(bundle_dir):
        path = os.path.join(bundle_dir, filename)
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
            workflows.append(describe_workflow(filename, content))
        except (OSError, WorkflowFileError) as e:
            logger.error(f"Failed to read workflow file {filename}: {e}")

    return workflows


def read_workflow_file(filename: str, bundle_dir: str) -> Tuple[str, WorkflowDefinition, str]:
    """Return (content, stripped definition, checksum) for one bundled file."""
    path = os.path.join(bundle_dir, filename)
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    return content, parse_workflow_file(content, filename), calculate_checksum(content)


def validate_workflows_directory(bundle_dir: str) -> Dict[str, Any]:
    """Fail-fast check that the bundle is present and non-empty."""
    if not os.path.isdir(bundle_dir):
        logger.error(f"Workflows directory validation failed: {bundle_dir} (cwd={os.getcwd()})")
        return {"valid": False, "workflows_dir": bundle_dir, "files_found": 0,
                "error": f"Directory not accessible: {bundle_dir}"}

    files = list_workflow_files(bundle_dir)
    if not files:
        logger.warning(f"No workflow JSON files found in {bundle_dir}")
        return {"valid": False, "workflows_dir": bundle_dir, "files_found": 0,
                "error": f"No workflow JSON files found in {bundle_dir}"}

    logger.info(f"Workflows directory validated: {bundle_dir} ({len(files)} files)")
    return {"valid": True, "workflows_dir": bundle_dir, "files_found": len(files)}
