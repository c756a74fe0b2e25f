"""
Service Context
Bundles the stores, bundle location and n8n client factory that every
operation receives explicitly.
"""
from typing import Callable, Optional

from factory_sync.core.client import N8NClient, get_client
from factory_sync.core.config import N8NConfig, Settings
from factory_sync.services.importer import WorkflowImporter
from factory_sync.services.registry import RegistryStore
from factory_sync.services.settings_store import SettingsStore, resolve_n8n_config


class FactoryContext:
    def __init__(
        self,
        registry: RegistryStore,
        settings_store: SettingsStore,
        bundle_dir: str,
        client_factory: Callable[[N8NConfig], N8NClient] = get_client,
        activation_pause: Optional[float] = None
    ):
        self.registry = registry
        self.settings_store = settings_store
        self.bundle_dir = bundle_dir
        self.client_factory = client_factory
        self.activation_pause = activation_pause

    @classmethod
    def from_settings(cls, settings: Settings) -> "FactoryContext":
        return cls(
            registry=RegistryStore(settings.registry_path),
            settings_store=SettingsStore(settings.settings_path, env=settings),
            bundle_dir=settings.workflows_dir,
        )

    def n8n_config(self, config_override: Optional[N8NConfig] = None) -> N8NConfig:
        """Raises N8NNotConfiguredError when no connection is stored or set in the environment."""
        return resolve_n8n_config(self.settings_store, config_override)

    def client(self, config_override: Optional[N8NConfig] = None) -> N8NClient:
        return self.client_factory(self.n8n_config(config_override))

    def optional_client(self) -> Optional[N8NClient]:
        config = self.settings_store.get_n8n_config()
        return self.client_factory(config) if config is not None else None

    def importer(self, client: N8NClient) -> WorkflowImporter:
        return WorkflowImporter(
            client,
            self.registry,
            self.bundle_dir,
            activation_pause=self.activation_pause,
        )
