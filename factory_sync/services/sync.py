"""
Registry Sync Service - Drift Reconciliation
Compares the local workflow registry with what actually exists on n8n.

n8n is the source of truth for existence and activation state; the
registry is the source of truth for what the bundle intends to import.
``detect`` only reports (apart from mirroring the active flag), ``pull``
additionally adopts matching orphans, ``reconcile`` also resets rows whose
remote workflow was deleted so they can be re-imported.
"""
from collections import defaultdict
from typing import Any, Dict, List, Optional, Union

from factory_sync.core.client import N8NClient, N8NClientError
from factory_sync.core.logging import sync_logger as logger
from factory_sync.models.schemas import (
    BundledWorkflow,
    ImportStatus,
    Orphan,
    SyncConflict,
    SyncEntryResult,
    SyncMode,
    SyncResult,
    utcnow,
)
from factory_sync.services.catalog import get_bundled_workflows, node_fingerprint
from factory_sync.services.registry import RegistryStore


async def enhanced_sync_workflow_registry(
    client: N8NClient,
    registry: RegistryStore,
    bundle_dir: Optional[str] = None,
    mode: Union[SyncMode, str] = SyncMode.DETECT,
    include_orphans: bool = True,
    workflows: Optional[List[BundledWorkflow]] = None
) -> SyncResult:
    """
    Classify every registry row and every remote workflow.

    Rows with a remote id are ``synced``, ``state_changed`` or ``deleted``.
    Remote workflows no row points at are orphans. With ``include_orphans``,
    an orphan named like a bundled workflow is adopted in ``pull`` and
    ``reconcile`` modes when nothing about the match is ambiguous;
    otherwise it is reported in ``conflicts``.

    Fetching the remote listing is the only call allowed to raise.
    """
    mode = SyncMode(mode)
    logger.info(f"Starting workflow registry sync (mode={mode.value}, include_orphans={include_orphans})")

    remote = await client.list_workflows()
    remote_by_id = {str(wf["id"]): wf for wf in remote}
    result = SyncResult(mode=mode, total=len(remote))
    claimed = set()

    for entry in registry.list():
        if entry.n8n_workflow_id is None:
            result.entries.append(SyncEntryResult(
                filename=entry.filename,
                workflow_name=entry.workflow_name,
                action="not_imported",
                previous_status=entry.import_status.value,
                new_status=entry.import_status.value,
            ))
            continue

        item = SyncEntryResult(
            filename=entry.filename,
            workflow_name=entry.workflow_name,
            n8n_workflow_id=entry.n8n_workflow_id,
            action="synced",
            previous_status=entry.import_status.value,
            new_status=entry.import_status.value,
        )
        remote_wf = remote_by_id.get(entry.n8n_workflow_id)
        if remote_wf is not None:
            claimed.add(entry.n8n_workflow_id)

        try:
            if remote_wf is None:
                item.action = "deleted"
                result.deleted += 1
                logger.warning(f"Workflow deleted from n8n: {entry.filename} ({entry.n8n_workflow_id})")
                if mode == SyncMode.RECONCILE:
                    registry.upsert(
                        entry.filename,
                        n8n_workflow_id=None,
                        is_active=False,
                        import_status=ImportStatus.PENDING,
                        last_error="Workflow was deleted from n8n",
                    )
                    item.new_status = ImportStatus.PENDING.value
            else:
                remote_active = bool(remote_wf.get("active", False))
                if remote_active != entry.is_active:
                    registry.upsert(entry.filename, is_active=remote_active)
                    item.action = "state_changed"
                    result.state_changed += 1
                    logger.info(
                        f"Workflow state changed in n8n: {entry.filename} "
                        f"active {entry.is_active} -> {remote_active}"
                    )
                else:
                    result.synced += 1
        except (OSError, ValueError) as e:
            item.action = "error"
            item.error = str(e)
            result.errors += 1
            logger.error(f"Failed to sync registry row {entry.filename}: {e}")

        result.entries.append(item)

    orphans = [wf for wf_id, wf in remote_by_id.items() if wf_id not in claimed]
    if orphans:
        if workflows is None:
            workflows = get_bundled_workflows(bundle_dir) if bundle_dir else []
        await _classify_orphans(client, registry, orphans, workflows, mode, include_orphans, result)

    logger.info(
        f"Workflow sync complete: total={result.total}, synced={result.synced}, "
        f"state_changed={result.state_changed}, deleted={result.deleted}, "
        f"orphans={len(result.orphans)}, pulled={result.pulled}, errors={result.errors}"
    )
    return result


async def _classify_orphans(
    client: N8NClient,
    registry: RegistryStore,
    orphans: List[Dict[str, Any]],
    workflows: List[BundledWorkflow],
    mode: SyncMode,
    include_orphans: bool,
    result: SyncResult
) -> None:
    bundled_by_name = {wf.name: wf for wf in workflows}
    name_counts: Dict[str, int] = defaultdict(int)
    for wf in orphans:
        name_counts[wf.get("name", "")] += 1

    for remote_wf in orphans:
        orphan = Orphan(
            n8n_workflow_id=str(remote_wf["id"]),
            name=remote_wf.get("name", ""),
            active=bool(remote_wf.get("active", False)),
            updated_at=remote_wf.get("updatedAt"),
        )
        result.orphans.append(orphan)

        bundled = bundled_by_name.get(orphan.name) if include_orphans else None
        if bundled is None:
            continue
        orphan.matched_filename = bundled.filename

        try:
            conflict = await _adoption_conflict(client, registry, orphan, remote_wf, bundled, name_counts[orphan.name])
        except N8NClientError as e:
            result.errors += 1
            logger.error(f"Could not read orphan {orphan.n8n_workflow_id} from n8n: {e.message}")
            continue
        if conflict is not None:
            result.conflicts.append(conflict)
            logger.warning(f"Orphan '{orphan.name}' ({orphan.n8n_workflow_id}) not adoptable: {conflict.detail}")
            continue

        if mode == SyncMode.DETECT:
            continue

        try:
            registry.upsert(
                bundled.filename,
                workflow_name=bundled.name,
                local_version=bundled.short_version,
                local_checksum=bundled.local_version,
                n8n_workflow_id=orphan.n8n_workflow_id,
                is_active=orphan.active,
                webhook_paths=bundled.webhook_paths,
                import_status=ImportStatus.IMPORTED,
                last_import_at=utcnow(),
                last_error=None,
            )
        except (OSError, ValueError) as e:
            result.errors += 1
            logger.error(f"Failed to adopt orphan {orphan.n8n_workflow_id} as {bundled.filename}: {e}")
            continue

        orphan.adopted = True
        result.pulled += 1
        logger.info(f"Adopted orphan workflow '{orphan.name}' ({orphan.n8n_workflow_id}) as {bundled.filename}")


async def _adoption_conflict(
    client: N8NClient,
    registry: RegistryStore,
    orphan: Orphan,
    remote_wf: Dict[str, Any],
    bundled: BundledWorkflow,
    same_name_count: int
) -> Optional[SyncConflict]:
    """None when the orphan can be adopted for ``bundled``, otherwise why not."""
    base = {"name": orphan.name, "n8n_workflow_id": orphan.n8n_workflow_id, "filename": bundled.filename}

    if same_name_count > 1:
        return SyncConflict(
            **base,
            reason="duplicate_name",
            detail=f"{same_name_count} unregistered n8n workflows are named '{orphan.name}'",
        )

    entry = registry.get(bundled.filename)
    if entry is not None and entry.n8n_workflow_id is not None:
        return SyncConflict(
            **base,
            reason="already_registered",
            detail=f"{bundled.filename} is already registered as {entry.n8n_workflow_id}",
        )

    nodes = remote_wf.get("nodes")
    if nodes is None:
        nodes = (await client.get_workflow(orphan.n8n_workflow_id)).get("nodes", [])
    if node_fingerprint(nodes) != bundled.node_fingerprint:
        return SyncConflict(
            **base,
            reason="content_mismatch",
            detail="Remote nodes differ from the bundled definition",
        )

    return None
