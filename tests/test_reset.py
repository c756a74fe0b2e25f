import pytest

from factory_sync.core.config import N8NConfig
from factory_sync.models.schemas import ImportStatus, ResetRequest
from factory_sync.services.reset import ResetConfirmationError, perform_full_reset, reset_setup


@pytest.fixture
def populated(registry, fake_n8n, settings_store, n8n_config):
    """Three imported workflows plus one row that never reached n8n."""
    for name in ("A", "B", "C"):
        workflow_id = fake_n8n.add_workflow(name, active=True)
        registry.upsert(
            f"{name.lower()}.json",
            workflow_name=name,
            n8n_workflow_id=workflow_id,
            is_active=True,
            import_status=ImportStatus.IMPORTED,
        )
    registry.upsert("d.json", workflow_name="D", import_status=ImportStatus.FAILED)
    settings_store.save_n8n_config(n8n_config)
    settings_store.complete_setup("user-1")
    settings_store.set("audit.last_reset", "never")
    return registry


async def test_soft_reset_makes_no_remote_calls(populated, fake_n8n, settings_store):
    result = await perform_full_reset("soft", populated, settings_store, client=fake_n8n)

    assert fake_n8n.calls == []
    assert result.deleted_from_n8n == 0
    assert result.cleared_from_registry == 4
    assert populated.list() == []
    assert settings_store.is_n8n_configured() is True
    assert result.success is True


async def test_full_reset_deletes_every_registered_workflow(populated, fake_n8n, settings_store):
    result = await perform_full_reset("full", populated, settings_store, client=fake_n8n)

    assert sorted(fake_n8n.calls_of("delete")) == ["wf1", "wf2", "wf3"]
    assert sorted(fake_n8n.calls_of("deactivate")) == ["wf1", "wf2", "wf3"]
    assert result.deleted_from_n8n == 3
    assert result.deactivated == 3
    assert fake_n8n.workflows == {}
    assert populated.list() == []
    # full reset leaves no trace by default
    assert settings_store.get("n8n.api_url") is None
    assert result.settings_reset is True


async def test_full_reset_does_not_stop_at_first_delete_failure(populated, fake_n8n, settings_store):
    fake_n8n.fail_delete.add("wf1")

    result = await perform_full_reset("full", populated, settings_store, client=fake_n8n)

    assert sorted(fake_n8n.calls_of("delete")) == ["wf1", "wf2", "wf3"]
    assert result.deleted_from_n8n == 2
    assert len(result.errors) == 1
    assert "wf1" in result.errors[0]
    assert result.success is False
    assert populated.list() == []


async def test_full_reset_deletes_even_when_deactivate_fails(populated, fake_n8n, settings_store):
    fake_n8n.fail_deactivate.update({"wf1", "wf2", "wf3"})

    result = await perform_full_reset("full", populated, settings_store, client=fake_n8n)

    assert result.deleted_from_n8n == 3
    assert result.deactivated == 0
    assert result.errors == []


async def test_full_reset_can_preserve_config(populated, fake_n8n, settings_store):
    await perform_full_reset("full", populated, settings_store, client=fake_n8n, preserve_n8n_config=True)

    assert settings_store.get("n8n.api_url") == "http://n8n.test/api/v1"


async def test_full_reset_without_connection_only_clears_locally(populated, settings_store):
    result = await perform_full_reset("full", populated, settings_store, client=None)

    assert result.deleted_from_n8n == 0
    assert result.cleared_from_registry == 4
    assert "n8n not configured" in result.warnings[0]


async def test_perform_full_reset_rejects_outer_modes(populated, settings_store):
    with pytest.raises(ValueError):
        await perform_full_reset("factory", populated, settings_store)


# =============================================================================
# CALLER-FACING RESET
# =============================================================================
def factory_for(fake):
    def client_factory(config: N8NConfig):
        return fake
    return client_factory


@pytest.mark.parametrize("mode", ["soft", "full", "clear_config", "factory"])
@pytest.mark.parametrize("confirmation", ["", "reset", "RESET ", "yes"])
async def test_confirmation_is_required_in_every_mode(populated, fake_n8n, settings_store, mode, confirmation):
    request = ResetRequest(mode=mode, confirmation=confirmation)

    with pytest.raises(ResetConfirmationError):
        await reset_setup(request, populated, settings_store, factory_for(fake_n8n))

    assert len(populated.list()) == 4
    assert fake_n8n.calls == []
    assert settings_store.is_n8n_configured() is True


async def test_soft_reset_preserves_connection_by_default(populated, fake_n8n, settings_store):
    result = await reset_setup(
        ResetRequest(mode="soft", confirmation="RESET"), populated, settings_store, factory_for(fake_n8n)
    )

    assert result.mode == "soft"
    assert fake_n8n.calls == []
    assert settings_store.is_n8n_configured() is True


async def test_clear_config_only_forgets_connection(populated, fake_n8n, settings_store):
    result = await reset_setup(
        ResetRequest(mode="clear_config", confirmation="RESET"), populated, settings_store, factory_for(fake_n8n)
    )

    assert result.success is True
    assert result.settings_cleared == ["n8n.api_url", "n8n.api_key", "n8n.webhook_base_url"]
    assert settings_store.is_n8n_configured() is False
    assert len(populated.list()) == 4
    assert fake_n8n.calls == []


async def test_factory_reset_clears_everything_but_audit(populated, fake_n8n, settings_store):
    result = await reset_setup(
        ResetRequest(mode="factory", confirmation="RESET"), populated, settings_store, factory_for(fake_n8n)
    )

    assert result.mode == "factory"
    assert result.deleted_from_n8n == 3
    assert result.setup_wizard_reset is True
    assert settings_store.is_setup_complete() is False
    assert settings_store.keys() == ["audit.last_reset"]
    assert populated.list() == []


async def test_factory_reset_can_drop_audit_log(populated, fake_n8n, settings_store):
    await reset_setup(
        ResetRequest(mode="factory", confirmation="RESET", preserve_audit_log=False),
        populated, settings_store, factory_for(fake_n8n)
    )

    assert settings_store.keys() == []
