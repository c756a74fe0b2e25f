"""
Main Application Gateway
Exposes workflow setup operations over FastAPI and as FastMCP tools.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastmcp import FastMCP

from factory_sync.core import dispatcher as skills
from factory_sync.core.client import N8NClientError, safe_tool
from factory_sync.core.config import N8NConfig, settings
from factory_sync.core.context import FactoryContext
from factory_sync.core.logging import gateway_logger as logger
from factory_sync.models.schemas import (
    DryRunRequest,
    FixStuckRequest,
    ImportRequest,
    N8NSettingsRequest,
    OperationResult,
    ResetRequest,
    SetupCompleteRequest,
    SyncRequest,
)
from factory_sync.services.reset import ResetConfirmationError
from factory_sync.services.settings_store import N8NNotConfiguredError

VERSION = "1.0.0"


# =============================================================================
# LIFESPAN MANAGER
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages the application lifecycle.
    - Startup: Log configuration
    - Shutdown: n8n clients are per-operation, nothing to close
    """
    ctx: FactoryContext = app.state.context
    logger.info("=" * 60)
    logger.info("Product Factory workflow sync starting")
    logger.info(f"Workflows: {ctx.bundle_dir}")
    logger.info(f"Data Dir: {settings.data_dir}")
    logger.info(f"n8n configured: {ctx.settings_store.is_n8n_configured()}")
    logger.info("=" * 60)

    yield

    logger.info("Product Factory workflow sync shutdown")


# =============================================================================
# FASTAPI APP INITIALIZATION
# =============================================================================
app = FastAPI(
    title="Product Factory Workflow Sync",
    description="Imports, reconciles and resets the bundled n8n workflows.",
    version=VERSION,
    lifespan=lifespan
)
app.state.context = FactoryContext.from_settings(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_context(request: Request) -> FactoryContext:
    return request.app.state.context


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================
def error_envelope(request: Request, status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "code": status_code,
            "message": message,
            "path": str(request.url.path)
        }
    )


@app.exception_handler(N8NNotConfiguredError)
async def not_configured_handler(request: Request, exc: N8NNotConfiguredError):
    return error_envelope(request, 400, str(exc))


@app.exception_handler(ResetConfirmationError)
async def confirmation_handler(request: Request, exc: ResetConfirmationError):
    logger.warning(f"Reset rejected: {exc}")
    return error_envelope(request, 400, str(exc))


@app.exception_handler(N8NClientError)
async def n8n_error_handler(request: Request, exc: N8NClientError):
    logger.error(f"n8n error on {request.url.path}: {exc.message}")
    return error_envelope(request, 502, exc.message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catches any unhandled error and returns it in Envelope format.
    """
    logger.error(f"Unhandled exception: {str(exc)}")
    return error_envelope(request, 500, str(exc))


# =============================================================================
# HEALTH & INFO ENDPOINTS
# =============================================================================
@app.get("/health")
async def health_check(ctx: FactoryContext = Depends(get_context)):
    """Check server and n8n connectivity status."""
    client = ctx.optional_client()
    if client is None:
        n8n_status = "not_configured"
    else:
        async with client:
            healthy = await client.health_check()
        ctx.settings_store.update_health_check(healthy)
        n8n_status = "connected" if healthy else "unreachable"

    return {
        "status": "healthy",
        "n8n_connection": n8n_status,
        "version": VERSION
    }


@app.get("/info")
async def server_info(ctx: FactoryContext = Depends(get_context)):
    """Get server configuration info."""
    config = ctx.settings_store.get_n8n_config()
    return {
        "name": "Product Factory Workflow Sync",
        "version": VERSION,
        "workflows_dir": ctx.bundle_dir,
        "data_dir": settings.data_dir,
        "n8n_url": config.base_url if config else None,
        "setup_complete": ctx.settings_store.is_setup_complete(),
        "skills": skills.get_skill_manifest()["skills"]
    }


# =============================================================================
# WORKFLOW ENDPOINTS
# =============================================================================
@app.get("/workflows/status")
async def workflows_status(ctx: FactoryContext = Depends(get_context)):
    return await skills.workflow_status(ctx)


@app.get("/workflows/dependencies")
async def workflows_dependencies(ctx: FactoryContext = Depends(get_context)):
    return await skills.dependency_graph(ctx)


@app.post("/workflows/validate")
async def workflows_validate(ctx: FactoryContext = Depends(get_context)):
    return await skills.validate_workflows(ctx)


@app.post("/workflows/dry-run")
async def workflows_dry_run(body: Optional[DryRunRequest] = None, ctx: FactoryContext = Depends(get_context)):
    body = body or DryRunRequest()
    return await skills.preview_import(ctx, force_update=body.force_update)


@app.post("/workflows/import")
async def workflows_import(body: Optional[ImportRequest] = None, ctx: FactoryContext = Depends(get_context)):
    """Two-phase import; partial failures still return 200 with the summary."""
    body = body or ImportRequest()
    result = await skills.import_workflows(ctx, **body.model_dump())
    return {"success": result["status"] == "complete", **result}


@app.post("/workflows/import-stream")
async def workflows_import_stream(
    request: Request,
    body: Optional[ImportRequest] = None,
    ctx: FactoryContext = Depends(get_context)
):
    """
    Two-phase import as Server-Sent Events.
    A client disconnect cancels the run before its next workflow.
    """
    body = body or ImportRequest()
    client = ctx.client()
    cancel = asyncio.Event()

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in ctx.importer(client).iter_import_events(cancel_event=cancel, **body.model_dump()):
                if await request.is_disconnected():
                    logger.warning("Import stream client disconnected, cancelling import")
                    cancel.set()
                yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"
        finally:
            await client.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )


@app.post("/workflows/sync")
async def workflows_sync(body: Optional[SyncRequest] = None, ctx: FactoryContext = Depends(get_context)):
    body = body or SyncRequest()
    return await skills.sync_registry(ctx, mode=body.mode.value, include_orphans=body.include_orphans)


@app.post("/workflows/fix-stuck")
async def workflows_fix_stuck(body: Optional[FixStuckRequest] = None, ctx: FactoryContext = Depends(get_context)):
    body = body or FixStuckRequest()
    return await skills.fix_stuck_imports(ctx, sync_first=body.sync_first)


# =============================================================================
# SETTINGS & SETUP ENDPOINTS
# =============================================================================
@app.get("/settings/n8n")
async def get_n8n_settings(ctx: FactoryContext = Depends(get_context)):
    config = ctx.settings_store.get_n8n_config()
    return {
        "configured": config is not None,
        "api_url": config.api_url if config else None,
        "webhook_base_url": config.webhook_base if config else None,
        "last_health_check": ctx.settings_store.get("n8n.last_health_check"),
    }


@app.post("/settings/n8n")
async def save_n8n_settings(body: N8NSettingsRequest, ctx: FactoryContext = Depends(get_context)):
    config = N8NConfig(api_url=body.api_url, api_key=body.api_key, webhook_base_url=body.webhook_base_url)
    if body.test_connection:
        async with ctx.client_factory(config) as client:
            test = await client.test_connection()
        if not test["success"]:
            return JSONResponse(
                status_code=400,
                content=OperationResult(status="error", message=test["error"]).model_dump()
            )
    ctx.settings_store.save_n8n_config(config)
    return OperationResult(status="success", message="n8n configuration saved")


@app.get("/setup/status")
async def get_setup_status(ctx: FactoryContext = Depends(get_context)):
    return await skills.setup_status(ctx)


@app.post("/setup/complete")
async def post_setup_complete(body: Optional[SetupCompleteRequest] = None, ctx: FactoryContext = Depends(get_context)):
    body = body or SetupCompleteRequest()
    return await skills.complete_setup(ctx, user_id=body.user_id)


@app.post("/setup/reset")
async def setup_reset(body: ResetRequest, ctx: FactoryContext = Depends(get_context)):
    """Per-workflow deletion failures are reported in the body, not as an HTTP error."""
    return await skills.reset(ctx, **body.model_dump())


# =============================================================================
# FASTMCP SERVER INITIALIZATION
# =============================================================================
mcp = FastMCP("Product Factory Workflow Sync")


def current_context() -> FactoryContext:
    return app.state.context


def as_json(result: Dict[str, Any]) -> str:
    return json.dumps(result, indent=2, default=str)


@mcp.tool()
@safe_tool
async def get_workflow_status() -> str:
    """
    List every bundled workflow with its import status, n8n id and webhook paths.

    Returns:
        JSON string with the merged bundle/registry view.
    """
    return as_json(await skills.workflow_status(current_context()))


@mcp.tool()
@safe_tool
async def get_dependency_graph() -> str:
    """
    Show which bundled workflows call which, their levels and the import order.

    Returns:
        JSON string with nodes, edges, levels, import order and cycles.
    """
    return as_json(await skills.dependency_graph(current_context()))


@mcp.tool()
@safe_tool
async def validate_workflows() -> str:
    """
    Pre-import validation: installed node types, dependency cycles, duplicate names.

    Returns:
        JSON string with valid/errors/warnings and both sub-results.
    """
    return as_json(await skills.validate_workflows(current_context()))


@mcp.tool()
@safe_tool
async def preview_import(force_update: bool = False) -> str:
    """
    Preview what an import would create, update or skip. Makes no changes.

    Args:
        force_update: Treat every imported workflow as needing an update

    Returns:
        JSON string with per-workflow actions and the import order.
    """
    return as_json(await skills.preview_import(current_context(), force_update=force_update))


@mcp.tool()
@safe_tool
async def import_workflows(
    force_update: bool = False,
    validate_first: bool = True,
    rollback_on_failure: bool = False
) -> str:
    """
    Import all bundled workflows with the two-phase protocol:
    create everything inactive, then activate in dependency order.

    Args:
        force_update: Re-push workflows whose content did not change
        validate_first: Check node types and cycles before touching n8n
        rollback_on_failure: Delete newly created workflows if Phase 1 fails

    Returns:
        JSON string with the import summary.
    """
    return as_json(await skills.import_workflows(
        current_context(),
        force_update=force_update,
        validate_first=validate_first,
        rollback_on_failure=rollback_on_failure
    ))


@mcp.tool()
@safe_tool
async def sync_workflow_registry(mode: str = "detect", include_orphans: bool = True) -> str:
    """
    Compare the local registry with n8n.

    Args:
        mode: detect (report only), pull (adopt matching orphans) or
              reconcile (also reset workflows deleted in n8n)
        include_orphans: Match unregistered n8n workflows against the bundle

    Returns:
        JSON string with counts, per-entry results, orphans and conflicts.
    """
    return as_json(await skills.sync_registry(current_context(), mode=mode, include_orphans=include_orphans))


@mcp.tool()
@safe_tool
async def reset_workflow_setup(
    mode: str,
    confirmation: str,
    preserve_n8n_config: Optional[bool] = None
) -> str:
    """
    Reset the workflow setup. Destructive; confirmation must be "RESET".

    Args:
        mode: soft, full, clear_config or factory
        confirmation: The literal string RESET
        preserve_n8n_config: Keep the n8n URL/API key (default: yes for soft, no otherwise)

    Returns:
        JSON string with the reset result.
    """
    return as_json(await skills.reset(
        current_context(), mode=mode, confirmation=confirmation, preserve_n8n_config=preserve_n8n_config
    ))


@mcp.tool()
@safe_tool
async def run_skill(skill: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Run any workflow setup skill by name.
    Call with skill="list" to get the available skills.

    Args:
        skill: Skill name (e.g. "fix_stuck", "check_updates", "retry_activations")
        params: Keyword arguments for the skill

    Returns:
        JSON string with the skill result.
    """
    if skill == "list":
        return as_json(skills.get_skill_manifest())
    return await skills.dispatch(current_context(), skill, params)


def get_mcp() -> FastMCP:
    """Get the FastMCP server instance."""
    return mcp


def get_app() -> FastAPI:
    """Get the FastAPI app instance."""
    return app


if __name__ == "__main__":
    mcp.run()
