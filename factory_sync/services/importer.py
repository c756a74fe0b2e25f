"""
Workflow Import Service - The Two-Phase Orchestrator
Imports bundled workflows into n8n and tracks every item in the registry.

Bulk imports run in two phases:
  1. create (or update) every workflow inactive, in dependency order;
  2. activate them in the same order, pausing after each activation.
All sub-workflows therefore exist before any parent is activated, which
avoids n8n's "references an inactive/unpublished workflow" rejection.
If any Phase 1 item fails, nothing is activated.
"""
import asyncio
import inspect
import os
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from factory_sync.core.client import N8NClient, N8NClientError, error_message
from factory_sync.core.config import settings
from factory_sync.core.logging import importer_logger as logger
from factory_sync.models.schemas import (
    CleanupResult,
    FailedActivation,
    ImportEvent,
    ImportResult,
    ImportStatus,
    ImportSummary,
    RegistryEntry,
    STATUSES_WITH_REMOTE_ID,
    utcnow,
)
from factory_sync.services.catalog import extract_webhook_paths, get_bundled_workflows, read_workflow_file
from factory_sync.services.dependencies import detect_circular_dependencies
from factory_sync.services.registry import RegistryStore
from factory_sync.services.validator import NodeTypeCatalog, find_duplicate_names, validate_bundle


class ImportCancelled(Exception):
    """Raised inside a run when the caller's cancellation token is set."""


class WorkflowImporter:
    """
    Drives imports for one bundle against one n8n instance.
    The client and registry are injected; nothing here reads global state.
    """

    def __init__(
        self,
        client: N8NClient,
        registry: RegistryStore,
        bundle_dir: str,
        activation_pause: Optional[float] = None,
        activation_retries: Optional[int] = None,
        retry_delay: Optional[float] = None
    ):
        self.client = client
        self.registry = registry
        self.bundle_dir = bundle_dir
        self.activation_pause = settings.activation_pause_seconds if activation_pause is None else activation_pause
        self.activation_retries = settings.activation_retries if activation_retries is None else activation_retries
        self.retry_delay = settings.activation_retry_delay if retry_delay is None else retry_delay

    # =========================================================================
    # SINGLE WORKFLOW
    # =========================================================================
    async def import_workflow(
        self,
        filename: str,
        force_update: bool = False,
        skip_activation: bool = False
    ) -> ImportResult:
        """
        Import one bundled workflow.

        Looks the workflow up by name on n8n: updates it when found, creates
        it otherwise. Unchanged, already-imported workflows are skipped
        without any remote call unless ``force_update`` is set.
        ``skip_activation`` leaves the workflow inactive (Phase 1).
        """
        logger.info(f"Importing workflow {filename} (force_update={force_update})")

        workflow_name = os.path.splitext(filename)[0]
        if not os.path.isfile(os.path.join(self.bundle_dir, filename)):
            message = f"Workflow file not found in bundle: {filename}"
            logger.error(message)
            return ImportResult(filename=filename, name=workflow_name, status="failed", error=message)

        checksum = ""
        entry = self.registry.get(filename)
        remote_id = entry.n8n_workflow_id if entry else None

        try:
            _, definition, checksum = read_workflow_file(filename, self.bundle_dir)
            workflow_name = definition.name

            if (
                entry is not None
                and entry.import_status == ImportStatus.IMPORTED
                and entry.local_checksum == checksum
                and not force_update
            ):
                logger.info(f"Workflow already imported, skipping: {filename}")
                return ImportResult(
                    filename=filename,
                    name=workflow_name,
                    status="skipped",
                    n8n_workflow_id=entry.n8n_workflow_id,
                    webhook_paths=entry.webhook_paths,
                )

            self.registry.upsert(
                filename,
                workflow_name=workflow_name,
                import_status=ImportStatus.UPDATING if remote_id else ImportStatus.IMPORTING,
            )

            existing = await self.client.find_workflow_by_name(workflow_name)
            if existing:
                remote_id = existing["id"]
                remote = await self.client.update_workflow(remote_id, definition)
                logger.info(f"Workflow updated: {filename} -> {remote_id}")
            else:
                remote = await self.client.create_workflow(definition)
                logger.info(f"Workflow created: {filename} -> {remote['id']}")

        except Exception as e:
            return self._record_failure(filename, workflow_name, checksum, remote_id, entry, e)

        workflow_id = remote["id"]
        action = "updated" if existing else "created"
        webhook_paths = extract_webhook_paths(definition)

        if skip_activation:
            self.registry.upsert(
                filename,
                workflow_name=workflow_name,
                local_version=checksum[:8],
                local_checksum=checksum,
                n8n_workflow_id=workflow_id,
                webhook_paths=webhook_paths,
                is_active=bool(remote.get("active", False)),
                import_status=ImportStatus.CREATED,
                last_import_at=utcnow(),
                last_error=None,
            )
            return ImportResult(
                filename=filename,
                name=workflow_name,
                status=action,
                n8n_workflow_id=workflow_id,
                webhook_paths=webhook_paths,
            )

        try:
            activated = await self.client.activate_with_retry(
                workflow_id, self.activation_retries, self.retry_delay
            )
        except Exception as e:
            message = f"Activation failed: {error_message(e)}"
            logger.error(f"Failed to activate {filename} ({workflow_id}): {message}")
            self.registry.upsert(
                filename,
                local_version=checksum[:8],
                local_checksum=checksum,
                n8n_workflow_id=workflow_id,
                webhook_paths=webhook_paths,
                is_active=False,
                import_status=ImportStatus.ACTIVATION_FAILED,
                last_import_at=utcnow(),
                last_error=message,
            )
            return ImportResult(
                filename=filename,
                name=workflow_name,
                status="activation_failed",
                n8n_workflow_id=workflow_id,
                webhook_paths=webhook_paths,
                error=message,
            )

        self.registry.upsert(
            filename,
            local_version=checksum[:8],
            local_checksum=checksum,
            n8n_workflow_id=workflow_id,
            webhook_paths=webhook_paths,
            is_active=bool(activated.get("active", True)),
            import_status=ImportStatus.IMPORTED,
            last_import_at=utcnow(),
            last_error=None,
        )
        return ImportResult(
            filename=filename,
            name=workflow_name,
            status="updated" if existing else "imported",
            n8n_workflow_id=workflow_id,
            webhook_paths=webhook_paths,
        )

    def _record_failure(
        self,
        filename: str,
        workflow_name: str,
        checksum: str,
        remote_id: Optional[str],
        previous: Optional[RegistryEntry],
        exc: Exception
    ) -> ImportResult:
        """
        A failed create leaves no remote workflow: status ``failed``.

        A failed update keeps the remote id. The row becomes
        ``update_available`` only when the bundled checksum differs from the
        last pushed one; otherwise its previous status is restored. The
        stored checksum always describes what is on n8n.
        """
        message = error_message(exc)
        logger.error(f"Failed to import workflow {filename} ('{workflow_name}'): {message}")

        if remote_id is None:
            status = ImportStatus.FAILED
        elif (
            previous is not None
            and previous.local_checksum == checksum
            and previous.n8n_workflow_id == remote_id
            and previous.import_status in STATUSES_WITH_REMOTE_ID
            and previous.import_status != ImportStatus.UPDATING
        ):
            status = previous.import_status
        else:
            status = ImportStatus.UPDATE_AVAILABLE

        self.registry.upsert(
            filename,
            workflow_name=workflow_name,
            n8n_workflow_id=remote_id,
            import_status=status,
            last_error=message,
            retry_count=(previous.retry_count if previous else 0) + 1,
        )
        return ImportResult(
            filename=filename,
            name=workflow_name,
            status="failed",
            n8n_workflow_id=remote_id,
            error=message,
        )

    # =========================================================================
    # BULK (TWO-PHASE) IMPORT
    # =========================================================================
    async def iter_import_events(
        self,
        force_update: bool = False,
        validate_first: bool = True,
        rollback_on_failure: bool = False,
        cleanup_on_activation_failure: bool = False,
        delete_on_cleanup: bool = False,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[ImportEvent]:
        """
        Run the two-phase import, yielding progress events.

        Order: start, [phase_change(validation), validation], phase_change(1),
        workflow_start/workflow_complete per item, phase_change(2), ...,
        then exactly one terminal ``complete`` or ``error`` event carrying
        the final summary. Setting ``cancel_event`` stops the run before the
        next item and ends the stream with an ``error`` event.
        """
        summary = ImportSummary()
        try:
            async for event in self._run_import(
                summary, force_update, validate_first, rollback_on_failure,
                cleanup_on_activation_failure, delete_on_cleanup, cancel_event
            ):
                yield event
        except ImportCancelled:
            logger.warning(f"Import cancelled during phase {summary.phase}")
            summary.status = "error"
            summary.errors.append("Import cancelled")
            yield self._terminal("error", summary, message="Import cancelled", cancelled=True)
        except Exception as e:
            message = error_message(e)
            logger.error(f"Workflow import aborted: {message}")
            summary.status = "error"
            summary.errors.append(message)
            yield self._terminal("error", summary, message=message)

    async def _run_import(
        self,
        summary: ImportSummary,
        force_update: bool,
        validate_first: bool,
        rollback_on_failure: bool,
        cleanup_on_activation_failure: bool,
        delete_on_cleanup: bool,
        cancel_event: Optional[asyncio.Event]
    ) -> AsyncIterator[ImportEvent]:
        def check_cancelled():
            if cancel_event is not None and cancel_event.is_set():
                raise ImportCancelled()

        yield ImportEvent(type="start", data={"force_update": force_update, "validate_first": validate_first})

        workflows = get_bundled_workflows(self.bundle_dir)
        summary.total = len(workflows)
        if not workflows:
            summary.status = "error"
            summary.errors.append(f"No workflows found in {self.bundle_dir}")
            yield self._terminal("error", summary, message=summary.errors[-1])
            return

        logger.info(f"Starting two-phase workflow import of {len(workflows)} workflows")

        if validate_first:
            summary.phase = "validation"
            yield ImportEvent(type="phase_change", data={"phase": "validation", "message": "Running pre-import validation"})
            validation = validate_bundle(workflows, await NodeTypeCatalog.from_client(self.client))
            dependency_result = validation.dependency_validation
            yield ImportEvent(type="validation", data={
                "valid": validation.valid,
                "errors": validation.errors,
                "warnings": validation.warnings,
                "missing_nodes": [m.model_dump() for m in validation.node_validation.missing_nodes],
                "has_cycles": dependency_result.has_cycle,
                "cycles": dependency_result.cycles,
            })
            if not validation.valid:
                summary.status = "error"
                summary.errors.extend(validation.errors)
                yield self._terminal("error", summary, message="Pre-import validation failed",
                                     errors=validation.errors, cycles=dependency_result.cycles)
                return
        else:
            duplicates = find_duplicate_names(workflows)
            if duplicates:
                summary.status = "error"
                summary.errors.append(f"Duplicate workflow names in bundle: {', '.join(duplicates)}")
                yield self._terminal("error", summary, message=summary.errors[-1], duplicates=duplicates)
                return
            dependency_result = detect_circular_dependencies(workflows)

        if dependency_result.has_cycle:
            summary.status = "error"
            summary.errors.append("Circular dependencies detected, cannot proceed")
            yield self._terminal("error", summary, message=summary.errors[-1], cycles=dependency_result.cycles)
            return

        by_name = {wf.name: wf for wf in workflows}
        ordered = [by_name[name] for name in dependency_result.dependency_order]

        # ---------------------------------------------------------------------
        # PHASE 1: create everything inactive
        # ---------------------------------------------------------------------
        summary.status = "importing"
        summary.phase = "creating"
        yield ImportEvent(type="phase_change", data={"phase": 1, "message": "Creating workflows (inactive)"})

        to_activate: List[ImportResult] = []
        for index, wf in enumerate(ordered):
            check_cancelled()
            item = {"index": index, "total": len(ordered), "name": wf.name, "filename": wf.filename, "phase": 1}
            yield ImportEvent(type="workflow_start", data=item)

            result = await self.import_workflow(wf.filename, force_update=force_update, skip_activation=True)
            summary.results.append(result)
            if result.status in ("created", "updated"):
                to_activate.append(result)

            yield ImportEvent(type="workflow_complete", data={
                **item,
                "status": result.status,
                "n8n_workflow_id": result.n8n_workflow_id,
                "error": result.error,
            })

        failures = [r for r in summary.results if r.status == "failed"]
        if failures:
            message = f"Phase 1 failed: {len(failures)} workflow(s) could not be created"
            logger.error(f"{message}; no workflow will be activated")
            summary.status = "error"
            summary.errors.append(message)
            rolled_back = []
            if rollback_on_failure:
                rolled_back = await self.rollback_created([r for r in to_activate if r.status == "created"])
            yield self._terminal(
                "error", summary,
                message=message,
                failures=[{"name": f.name, "filename": f.filename, "error": f.error} for f in failures],
                rolled_back=rolled_back,
            )
            return

        # ---------------------------------------------------------------------
        # PHASE 2: activate in dependency order
        # ---------------------------------------------------------------------
        summary.phase = "activating"
        yield ImportEvent(type="phase_change", data={"phase": 2, "message": "Activating workflows"})

        for index, result in enumerate(to_activate):
            check_cancelled()
            item = {"index": index, "total": len(to_activate), "name": result.name,
                    "filename": result.filename, "phase": 2}
            yield ImportEvent(type="workflow_start", data=item)

            activated = await self._activate(result, summary)

            yield ImportEvent(type="workflow_complete", data={
                **item,
                "status": "activated" if activated else "activation_failed",
                "n8n_workflow_id": result.n8n_workflow_id,
                "error": result.error,
            })

            if activated and self.activation_pause > 0:
                # n8n needs time to index a newly active trigger before a
                # dependent workflow's activation can reference it
                await asyncio.sleep(self.activation_pause)

        # ---------------------------------------------------------------------
        # OPTIONAL PHASE 3: clean up failed activations
        # ---------------------------------------------------------------------
        if cleanup_on_activation_failure and summary.failed_activations:
            summary.phase = "cleaning"
            yield ImportEvent(type="phase_change", data={"phase": "cleanup", "message": "Cleaning up failed activations"})
            cleanups = await self.cleanup_failed_activations(summary.failed_activations, delete=delete_on_cleanup)
            cleaned = {c.filename for c in cleanups if c.action != "error"}
            for failed in summary.failed_activations:
                failed.cleaned = failed.filename in cleaned

        failed_count = summary.count("failed") + summary.count("activation_failed")
        summary.status = "error" if failed_count else "complete"
        summary.phase = None
        counts = summary.counts()
        logger.info(
            "Two-phase workflow import complete: "
            + ", ".join(f"{key}={value}" for key, value in counts.items())
        )
        yield self._terminal(
            "complete", summary,
            **counts,
            activated=len(to_activate) - len(summary.failed_activations),
        )

    async def _activate(self, result: ImportResult, summary: ImportSummary) -> bool:
        """Activate one Phase 1 result in place; failures are recorded, not raised."""
        try:
            activated = await self.client.activate_with_retry(
                result.n8n_workflow_id, self.activation_retries, self.retry_delay
            )
        except Exception as e:
            message = f"Activation failed: {error_message(e)}"
            logger.error(f"Failed to activate {result.filename} ({result.n8n_workflow_id}): {message}")
            self.registry.upsert(
                result.filename,
                is_active=False,
                import_status=ImportStatus.ACTIVATION_FAILED,
                last_error=message,
            )
            summary.failed_activations.append(FailedActivation(
                filename=result.filename, workflow_id=result.n8n_workflow_id, error=message
            ))
            result.status = "activation_failed"
            result.error = message
            return False

        self.registry.upsert(
            result.filename,
            is_active=bool(activated.get("active", True)),
            import_status=ImportStatus.IMPORTED,
            last_import_at=utcnow(),
            last_error=None,
        )
        if result.status == "created":
            result.status = "imported"
        logger.info(f"Workflow activated: {result.filename} ({result.n8n_workflow_id})")
        return True

    @staticmethod
    def _terminal(event_type: str, summary: ImportSummary, **data: Any) -> ImportEvent:
        return ImportEvent(type=event_type, data={**data, "summary": summary.model_dump(mode="json")})

    async def import_all_workflows(
        self,
        on_event: Optional[Callable[[ImportEvent], Any]] = None,
        **options: Any
    ) -> ImportSummary:
        """Run the two-phase import to completion and return its summary."""
        final: Optional[ImportEvent] = None
        async for event in self.iter_import_events(**options):
            if on_event is not None:
                outcome = on_event(event)
                if inspect.isawaitable(outcome):
                    await outcome
            if event.terminal:
                final = event
        return ImportSummary.model_validate(final.data["summary"])

    # =========================================================================
    # RECOVERY
    # =========================================================================
    async def rollback_created(self, created: List[ImportResult]) -> List[str]:
        """Delete workflows this run created; their rows go back to ``pending``."""
        logger.warning(f"Rolling back {len(created)} created workflow(s)")
        rolled_back = []
        for result in created:
            try:
                await self.client.delete_workflow(result.n8n_workflow_id)
            except Exception as e:
                logger.error(f"Failed to roll back {result.filename} ({result.n8n_workflow_id}): {error_message(e)}")
                continue
            self.registry.upsert(
                result.filename,
                n8n_workflow_id=None,
                is_active=False,
                import_status=ImportStatus.PENDING,
                last_error="Rolled back due to import failure",
            )
            rolled_back.append(result.filename)
        return rolled_back

    async def cleanup_failed_activations(
        self,
        failed: List[FailedActivation],
        delete: bool = False,
        reset_registry: bool = True
    ) -> List[CleanupResult]:
        """
        Deactivate (default) or delete workflows whose activation failed.
        Deleted workflows go back to ``pending`` so they can be re-imported.
        """
        logger.info(f"Cleaning up {len(failed)} failed activation(s) ({'delete' if delete else 'deactivate'})")
        results = []
        for item in failed:
            cleanup = CleanupResult(filename=item.filename, workflow_id=item.workflow_id, action="error")
            try:
                if delete:
                    await self.client.delete_workflow(item.workflow_id)
                    cleanup.action = "deleted"
                    if reset_registry:
                        self.registry.upsert(
                            item.filename,
                            n8n_workflow_id=None,
                            is_active=False,
                            import_status=ImportStatus.PENDING,
                            last_error="Deleted after activation failure",
                        )
                else:
                    try:
                        await self.client.deactivate_workflow(item.workflow_id)
                    except N8NClientError as e:
                        logger.debug(f"Deactivate of {item.workflow_id} returned {e.message} (may already be inactive)")
                    cleanup.action = "deactivated"
                    if reset_registry:
                        self.registry.upsert(
                            item.filename,
                            is_active=False,
                            import_status=ImportStatus.ACTIVATION_FAILED,
                            last_error=item.error,
                        )
            except Exception as e:
                cleanup.error = error_message(e)
                logger.error(f"Failed to clean up {item.filename} ({item.workflow_id}): {cleanup.error}")
            results.append(cleanup)
        return results

    async def retry_failed_activations(self, filenames: Optional[List[str]] = None) -> List[ImportResult]:
        """Retry activation for rows in ``activation_failed`` (or created-but-inactive)."""
        candidates = [
            e for e in self.registry.with_status(ImportStatus.ACTIVATION_FAILED, ImportStatus.CREATED)
            if filenames is None or e.filename in filenames
        ]
        logger.info(f"Retrying activation for {len(candidates)} workflow(s)")

        results = []
        for entry in candidates:
            result = ImportResult(
                filename=entry.filename,
                name=entry.workflow_name,
                status="created",
                n8n_workflow_id=entry.n8n_workflow_id,
                webhook_paths=entry.webhook_paths,
            )
            activated = await self._activate(result, ImportSummary())
            results.append(result)
            if activated and self.activation_pause > 0:
                await asyncio.sleep(self.activation_pause)
        return results


# =============================================================================
# REGISTRY HOUSEKEEPING
# =============================================================================
def reset_stuck_imports(registry: RegistryStore) -> int:
    """
    Recover rows left in ``importing``/``updating`` by an interrupted run.
    Rows without a remote id return to ``pending``; rows with one become
    ``update_available``.
    """
    count = 0
    for entry in registry.with_status(ImportStatus.IMPORTING, ImportStatus.UPDATING):
        registry.upsert(
            entry.filename,
            import_status=ImportStatus.UPDATE_AVAILABLE if entry.n8n_workflow_id else ImportStatus.PENDING,
            last_error="Reset: Previous import was interrupted",
        )
        count += 1

    if count:
        logger.warning(f"Reset {count} stuck workflow import(s)")
    else:
        logger.debug("No stuck imports to reset")
    return count


def check_for_updates(bundle_dir: str, registry: RegistryStore, mark: bool = True) -> List[Dict[str, Any]]:
    """
    Compare bundle checksums with the registry.
    With ``mark``, imported rows whose bundled file changed become ``update_available``.
    """
    results = []
    for wf in get_bundled_workflows(bundle_dir):
        entry = registry.get(wf.filename)
        changed = entry is not None and entry.local_checksum != wf.local_version
        if mark and changed and entry.import_status == ImportStatus.IMPORTED:
            registry.upsert(wf.filename, import_status=ImportStatus.UPDATE_AVAILABLE)
        results.append({
            "filename": wf.filename,
            "name": wf.name,
            "current_version": entry.local_checksum[:8] if entry and entry.local_checksum else "not imported",
            "new_version": wf.short_version,
            "has_update": entry is None or changed or entry.import_status != ImportStatus.IMPORTED,
        })
    return results


def get_workflow_status(bundle_dir: str, registry: RegistryStore) -> List[Dict[str, Any]]:
    """Bundle metadata merged with each workflow's registry row."""
    status = []
    for wf in get_bundled_workflows(bundle_dir):
        entry = registry.get(wf.filename)
        status.append({
            "filename": wf.filename,
            "name": wf.name,
            "local_version": wf.short_version,
            "n8n_workflow_id": entry.n8n_workflow_id if entry else None,
            "is_active": entry.is_active if entry else False,
            "import_status": entry.import_status.value if entry else ImportStatus.PENDING.value,
            "webhook_paths": entry.webhook_paths if entry and entry.webhook_paths else wf.webhook_paths,
            "has_credentials": wf.has_credentials,
            "last_import_at": entry.last_import_at.isoformat() if entry and entry.last_import_at else None,
            "last_error": entry.last_error if entry else None,
        })
    return status
