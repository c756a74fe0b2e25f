"""
Skill Dispatcher
Internal registry and router for the workflow setup operations.
Maps a single ``run_skill`` tool onto the service layer so the MCP surface
stays small.
"""
import inspect
import json
from collections import Counter
from typing import Any, Dict, Optional

from factory_sync.core.context import FactoryContext
from factory_sync.core.logging import gateway_logger as logger
from factory_sync.models.schemas import ResetRequest, SyncMode
from factory_sync.services.catalog import get_bundled_workflows, validate_workflows_directory
from factory_sync.services.dependencies import build_dependency_graph
from factory_sync.services.importer import check_for_updates, get_workflow_status, reset_stuck_imports
from factory_sync.services.reset import reset_setup
from factory_sync.services.settings_store import N8NNotConfiguredError
from factory_sync.services.sync import enhanced_sync_workflow_registry
from factory_sync.services.validator import dry_run_import, validate_pre_import


async def workflow_status(ctx: FactoryContext) -> Dict[str, Any]:
    workflows = get_workflow_status(ctx.bundle_dir, ctx.registry)
    return {"total": len(workflows), "workflows": workflows}


async def dependency_graph(ctx: FactoryContext) -> Dict[str, Any]:
    return build_dependency_graph(get_bundled_workflows(ctx.bundle_dir)).model_dump(mode="json")


async def validate_bundle_dir(ctx: FactoryContext) -> Dict[str, Any]:
    return validate_workflows_directory(ctx.bundle_dir)


async def validate_workflows(ctx: FactoryContext) -> Dict[str, Any]:
    client = ctx.optional_client()
    try:
        result = await validate_pre_import(ctx.bundle_dir, client)
    finally:
        if client is not None:
            await client.close()
    return result.model_dump(mode="json")


async def preview_import(ctx: FactoryContext, force_update: bool = False) -> Dict[str, Any]:
    client = ctx.optional_client()
    try:
        result = await dry_run_import(ctx.bundle_dir, ctx.registry, client, force_update=force_update)
    finally:
        if client is not None:
            await client.close()
    return result.model_dump(mode="json")


async def import_workflows(
    ctx: FactoryContext,
    force_update: bool = False,
    validate_first: bool = True,
    rollback_on_failure: bool = False,
    cleanup_on_activation_failure: bool = False
) -> Dict[str, Any]:
    async with ctx.client() as client:
        summary = await ctx.importer(client).import_all_workflows(
            force_update=force_update,
            validate_first=validate_first,
            rollback_on_failure=rollback_on_failure,
            cleanup_on_activation_failure=cleanup_on_activation_failure,
        )
    return {**summary.counts(), **summary.model_dump(mode="json")}


async def import_single_workflow(ctx: FactoryContext, filename: str, force_update: bool = False) -> Dict[str, Any]:
    async with ctx.client() as client:
        result = await ctx.importer(client).import_workflow(filename, force_update=force_update)
    return result.model_dump(mode="json")


async def retry_activations(ctx: FactoryContext) -> Dict[str, Any]:
    async with ctx.client() as client:
        results = await ctx.importer(client).retry_failed_activations()
    return {"retried": len(results), "results": [r.model_dump(mode="json") for r in results]}


async def sync_registry(ctx: FactoryContext, mode: str = "detect", include_orphans: bool = True) -> Dict[str, Any]:
    async with ctx.client() as client:
        result = await enhanced_sync_workflow_registry(
            client, ctx.registry, ctx.bundle_dir, mode=SyncMode(mode), include_orphans=include_orphans
        )
    return {"success": result.success, **result.model_dump(mode="json")}


async def fix_stuck_imports(ctx: FactoryContext, sync_first: bool = True) -> Dict[str, Any]:
    """
    Reconcile registry rows with n8n (when configured) and release rows stuck
    mid-import. Orphans are left alone; adopting them is the sync skill's job.
    """
    sync_result = None
    if sync_first and ctx.settings_store.is_n8n_configured():
        async with ctx.client() as client:
            sync_result = await enhanced_sync_workflow_registry(
                client, ctx.registry, ctx.bundle_dir, mode=SyncMode.RECONCILE, include_orphans=False
            )
    reset_count = reset_stuck_imports(ctx.registry)
    return {
        "success": True,
        "stuck_reset": reset_count,
        "sync": sync_result.model_dump(mode="json") if sync_result else None,
    }


async def check_updates(ctx: FactoryContext) -> Dict[str, Any]:
    updates = check_for_updates(ctx.bundle_dir, ctx.registry)
    return {"updates_available": sum(1 for u in updates if u["has_update"]), "workflows": updates}


async def reset(
    ctx: FactoryContext,
    mode: str,
    confirmation: str,
    preserve_n8n_config: Optional[bool] = None,
    preserve_audit_log: bool = True
) -> Dict[str, Any]:
    request = ResetRequest(
        mode=mode,
        confirmation=confirmation,
        preserve_n8n_config=preserve_n8n_config,
        preserve_audit_log=preserve_audit_log,
    )
    result = await reset_setup(request, ctx.registry, ctx.settings_store, ctx.client_factory)
    return result.model_dump(mode="json")


async def test_connection(ctx: FactoryContext) -> Dict[str, Any]:
    async with ctx.client() as client:
        return await client.test_connection()


async def setup_status(ctx: FactoryContext) -> Dict[str, Any]:
    entries = ctx.registry.list()
    by_status = Counter(entry.import_status.value for entry in entries)
    return {
        "setup_complete": ctx.settings_store.is_setup_complete(),
        "n8n_configured": ctx.settings_store.is_n8n_configured(),
        "setup": ctx.settings_store.setup_state(),
        "last_health_check": ctx.settings_store.get("n8n.last_health_check"),
        "workflows": {
            "bundled": len(get_bundled_workflows(ctx.bundle_dir)),
            "registered": len(entries),
            "by_status": dict(by_status),
        },
    }


async def complete_setup(ctx: FactoryContext, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Mark the setup wizard finished; requires a stored n8n connection."""
    if not ctx.settings_store.is_n8n_configured():
        raise N8NNotConfiguredError()
    ctx.settings_store.complete_setup(user_id)
    logger.info(f"Setup wizard completed by {user_id or 'unknown'}")
    return {"status": "success", "message": "Setup completed", "setup": ctx.settings_store.setup_state()}


# Registry Mapping
REGISTRY = {
    # Bundle
    "workflow_status": workflow_status,
    "dependency_graph": dependency_graph,
    "validate_directory": validate_bundle_dir,
    "check_updates": check_updates,

    # Import
    "validate": validate_workflows,
    "dry_run": preview_import,
    "import_all": import_workflows,
    "import_workflow": import_single_workflow,
    "retry_activations": retry_activations,

    # Drift & recovery
    "sync": sync_registry,
    "fix_stuck": fix_stuck_imports,
    "reset": reset,
    "test_connection": test_connection,

    # Setup wizard
    "setup_status": setup_status,
    "complete_setup": complete_setup,
}


async def dispatch(ctx: FactoryContext, skill: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Routes a skill request to the service layer."""
    if skill not in REGISTRY:
        return json.dumps({
            "status": "error",
            "message": f"Skill '{skill}' not found in registry.",
            "available_skills": list(REGISTRY.keys())
        })

    func = REGISTRY[skill]
    params = params or {}
    try:
        inspect.signature(func).bind(ctx, **params)
    except TypeError as e:
        logger.error(f"Bad parameters for {skill}: {e}")
        return json.dumps({"status": "error", "code": 400, "message": str(e)})

    result = await func(ctx, **params)
    return json.dumps(result, indent=2, default=str)


def get_skill_manifest() -> Dict[str, Any]:
    """Returns the list of all available skills for discovery."""
    return {
        "total": len(REGISTRY),
        "skills": list(REGISTRY.keys())
    }
