"""
Pre-Import Validation Service
Checks a bundle against the target n8n before anything is mutated:
installed node types, dependency cycles and duplicate names.
"""
from collections import Counter
from typing import Dict, Iterable, List, Optional

from factory_sync.core.client import N8NClient, N8NClientError
from factory_sync.core.logging import validator_logger as logger
from factory_sync.models.schemas import (
    BundledWorkflow,
    DryRunResult,
    DryRunWorkflow,
    ImportStatus,
    MissingNodeType,
    NodeValidationResult,
    PreImportValidationResult,
)
from factory_sync.services.catalog import get_bundled_workflows
from factory_sync.services.dependencies import detect_circular_dependencies
from factory_sync.services.registry import RegistryStore


class NodeTypeCatalog:
    """
    The set of node types a target instance has installed.
    An empty catalog means the set is unknown, not that nothing is installed.
    """

    def __init__(self, node_types: Iterable[str] = ()):
        self._types = frozenset(node_types)

    def has(self, node_type: str) -> bool:
        return node_type in self._types

    @property
    def known(self) -> bool:
        return bool(self._types)

    def __len__(self) -> int:
        return len(self._types)

    @classmethod
    async def from_client(cls, client: N8NClient) -> "NodeTypeCatalog":
        try:
            return cls(await client.list_installed_node_types())
        except N8NClientError as e:
            logger.warning(f"Could not retrieve node types from n8n: {e.message}")
            return cls()


def validate_node_compatibility(
    workflows: List[BundledWorkflow],
    catalog: Optional[NodeTypeCatalog]
) -> NodeValidationResult:
    """Cross-check every distinct node type used by the bundle against the catalog."""
    result = NodeValidationResult(total_nodes=sum(wf.node_count for wf in workflows))

    if catalog is None:
        result.warnings.append("n8n not configured, skipping node validation")
        return result
    if not catalog.known:
        result.warnings.append("Could not retrieve available node types from n8n, skipping node validation")
        return result

    logger.info(f"Validating node compatibility: {len(workflows)} workflows, {len(catalog)} node types available")

    affected: Dict[str, List[str]] = {}
    for wf in workflows:
        for node_type in wf.node_types:
            if not catalog.has(node_type):
                affected.setdefault(node_type, []).append(wf.filename)

    result.missing_nodes = [
        MissingNodeType(node_type=node_type, workflows=files)
        for node_type, files in sorted(affected.items())
    ]
    result.valid = not result.missing_nodes

    if result.valid:
        logger.info(f"Node compatibility validation passed ({result.total_nodes} nodes)")
    else:
        logger.warning(f"Node compatibility validation failed: {len(result.missing_nodes)} missing type(s)")

    return result


def find_duplicate_names(workflows: List[BundledWorkflow]) -> List[str]:
    return sorted(name for name, count in Counter(wf.name for wf in workflows).items() if count > 1)


def validate_bundle(
    workflows: List[BundledWorkflow],
    catalog: Optional[NodeTypeCatalog]
) -> PreImportValidationResult:
    """
    Combine node and dependency validation.
    Missing node types are treated as a global stop: a partial import would
    leave the dependency graph half-built.
    """
    result = PreImportValidationResult()

    if not workflows:
        result.valid = False
        result.errors.append("No workflows found to validate")
        return result

    duplicates = find_duplicate_names(workflows)
    if duplicates:
        result.errors.append(f"Duplicate workflow names in bundle: {', '.join(duplicates)}")

    result.node_validation = validate_node_compatibility(workflows, catalog)
    result.dependency_validation = detect_circular_dependencies(workflows)
    result.warnings.extend(result.node_validation.warnings)

    for name, deps in result.dependency_validation.external_dependencies.items():
        result.warnings.append(f"{name} depends on workflows not in the bundle: {', '.join(deps)}")

    if not result.node_validation.valid:
        details = ", ".join(
            f"{m.node_type} ({m.workflow_count} workflow{'s' if m.workflow_count != 1 else ''})"
            for m in result.node_validation.missing_nodes
        )
        result.errors.append(f"Missing node types in n8n instance: {details}")

    if result.dependency_validation.has_cycle:
        cycles = "; ".join(" -> ".join(c) for c in result.dependency_validation.cycles)
        result.errors.append(f"Circular dependencies detected: {cycles}")

    result.valid = not result.errors
    logger.info(
        f"Pre-import validation complete: valid={result.valid}, "
        f"errors={len(result.errors)}, warnings={len(result.warnings)}"
    )
    return result


async def validate_pre_import(bundle_dir: str, client: Optional[N8NClient]) -> PreImportValidationResult:
    """Validate the bundle directory against the instance behind ``client``."""
    logger.info("Running pre-import validation")
    workflows = get_bundled_workflows(bundle_dir)
    catalog = await NodeTypeCatalog.from_client(client) if client is not None else None
    return validate_bundle(workflows, catalog)


def plan_action(wf: BundledWorkflow, registry: RegistryStore, force_update: bool) -> DryRunWorkflow:
    entry = registry.get(wf.filename)

    if entry is None or entry.n8n_workflow_id is None:
        action, reason = "create", "Workflow not yet imported"
    elif force_update:
        action, reason = "update", "Force update requested"
    elif entry.local_checksum != wf.local_version:
        action, reason = "update", "Workflow content changed (checksum mismatch)"
    elif entry.import_status != ImportStatus.IMPORTED:
        action, reason = "update", f"Previous import status: {entry.import_status.value}"
    else:
        action, reason = "skip", "Already imported with matching version"

    return DryRunWorkflow(
        filename=wf.filename,
        name=wf.name,
        action=action,
        reason=reason,
        current_version=entry.local_checksum[:8] if entry and entry.local_checksum else None,
        new_version=wf.short_version,
        node_count=wf.node_count,
        has_credentials=wf.has_credentials,
        webhook_paths=wf.webhook_paths,
        dependencies=wf.dependencies,
    )


async def dry_run_import(
    bundle_dir: str,
    registry: RegistryStore,
    client: Optional[N8NClient],
    force_update: bool = False
) -> DryRunResult:
    """Preview what an import would do, without touching n8n or the registry."""
    logger.info(f"Running dry-run import preview (force_update={force_update})")
    validation = await validate_pre_import(bundle_dir, client)
    workflows = [plan_action(wf, registry, force_update) for wf in get_bundled_workflows(bundle_dir)]
    actions = Counter(wf.action for wf in workflows)

    return DryRunResult(
        valid=validation.valid,
        validation=validation,
        workflows=workflows,
        summary={
            "total": len(workflows),
            "to_create": actions["create"],
            "to_update": actions["update"],
            "to_skip": actions["skip"],
        },
        import_order=validation.dependency_validation.dependency_order,
    )
