"""
Reset Service - Setup Teardown
soft:         clear the registry, workflows stay in n8n
full:         deactivate + delete registered workflows in n8n, clear the registry
clear_config: forget the n8n URL/API key only
factory:      full + clear all settings + reset the setup wizard
"""
from typing import Callable, Optional

from factory_sync.core.client import N8NClient, error_message
from factory_sync.core.config import N8NConfig
from factory_sync.core.logging import reset_logger as logger
from factory_sync.models.schemas import ResetMode, ResetRequest, ResetResult
from factory_sync.services.registry import RegistryStore
from factory_sync.services.settings_store import N8N_CONFIG_KEYS, SettingsStore

RESET_CONFIRMATION = "RESET"


class ResetConfirmationError(ValueError):
    def __init__(self):
        super().__init__(f"Confirmation string must be '{RESET_CONFIRMATION}'")


def default_preserve_n8n_config(mode: ResetMode) -> bool:
    """Soft reset restarts the import against the same instance; full leaves no trace."""
    return mode == "soft"


async def perform_full_reset(
    mode: ResetMode,
    registry: RegistryStore,
    settings_store: SettingsStore,
    client: Optional[N8NClient] = None,
    preserve_n8n_config: Optional[bool] = None
) -> ResetResult:
    """
    Reset the workflow setup in ``soft`` or ``full`` mode.

    In full mode every registered remote workflow is deactivated (failures
    ignored) and then deleted (failures recorded). One failing workflow never
    stops the loop.
    """
    if mode not in ("soft", "full"):
        raise ValueError(f"perform_full_reset supports soft/full, got {mode!r}")
    if preserve_n8n_config is None:
        preserve_n8n_config = default_preserve_n8n_config(mode)

    result = ResetResult(mode=mode)
    logger.info(f"Starting {mode} reset (preserve_n8n_config={preserve_n8n_config})")

    if mode == "full":
        if client is None:
            result.warnings.append("n8n not configured - skipping workflow deletion from n8n instance")
            logger.warning("n8n not configured, reset will skip n8n deletion")
        else:
            for entry in registry.list():
                if entry.n8n_workflow_id is None:
                    continue
                workflow_id = entry.n8n_workflow_id

                try:
                    await client.deactivate_workflow(workflow_id)
                    result.deactivated += 1
                except Exception as e:
                    logger.debug(f"Deactivate of {workflow_id} failed, deleting anyway: {error_message(e)}")

                try:
                    await client.delete_workflow(workflow_id)
                    result.deleted_from_n8n += 1
                    logger.info(f"Deleted workflow {entry.filename} ({workflow_id}) from n8n")
                except Exception as e:
                    message = f"Failed to delete {entry.workflow_name} ({workflow_id}): {error_message(e)}"
                    result.errors.append(message)
                    logger.error(message)

    result.cleared_from_registry = registry.clear()

    if not preserve_n8n_config:
        result.settings_cleared.extend(settings_store.clear_n8n_config())
        result.settings_reset = True

    result.success = not result.errors
    logger.info(
        f"Reset complete: mode={mode}, deleted={result.deleted_from_n8n}, "
        f"cleared={result.cleared_from_registry}, errors={len(result.errors)}"
    )
    return result


async def reset_setup(
    request: ResetRequest,
    registry: RegistryStore,
    settings_store: SettingsStore,
    client_factory: Callable[[N8NConfig], N8NClient]
) -> ResetResult:
    """
    Caller-facing reset with the confirmation gate.
    Raises ResetConfirmationError before anything runs, in every mode.
    """
    if request.confirmation != RESET_CONFIRMATION:
        raise ResetConfirmationError()

    if request.mode == "clear_config":
        result = ResetResult(mode="clear_config")
        settings_store.clear_n8n_config()
        result.settings_cleared = list(N8N_CONFIG_KEYS[:3])
        result.settings_reset = True
        result.success = True
        logger.info("Cleared n8n configuration")
        return result

    client = None
    if request.mode in ("full", "factory"):
        config = settings_store.get_n8n_config()
        if config is not None:
            client = client_factory(config)

    try:
        result = await perform_full_reset(
            "soft" if request.mode == "soft" else "full",
            registry,
            settings_store,
            client=client,
            preserve_n8n_config=request.preserve_n8n_config,
        )
    finally:
        if client is not None:
            await client.close()
    result.mode = request.mode

    if request.mode == "factory":
        result.settings_cleared.extend(settings_store.clear_all(preserve_audit_log=request.preserve_audit_log))
        result.settings_cleared.append("all_settings")
        result.settings_reset = True
        result.setup_wizard_reset = not settings_store.is_setup_complete()
        if not result.setup_wizard_reset:
            result.warnings.append("Failed to reset setup wizard state")
        logger.info(f"Cleared all settings (preserve_audit_log={request.preserve_audit_log})")

    return result
