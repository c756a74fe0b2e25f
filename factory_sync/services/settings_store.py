"""
Settings Store
Key/value application settings (n8n connection, setup wizard flags, audit
markers) persisted as JSON next to the workflow registry.
"""
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from factory_sync.core.config import N8NConfig, Settings, settings as default_settings
from factory_sync.core.logging import store_logger as logger
from factory_sync.services.registry import atomic_write_json

N8N_CONFIG_KEYS = (
    "n8n.api_url",
    "n8n.api_key",
    "n8n.webhook_base_url",
    "n8n.configured_at",
    "n8n.last_health_check",
)
SETUP_PREFIX = "setup."
AUDIT_PREFIX = "audit."


class N8NNotConfiguredError(ValueError):
    """No n8n URL/API key available in the settings store or environment."""
    def __init__(self):
        super().__init__("n8n is not configured. Please complete the setup wizard.")


class SettingsStore:
    """Flat key/value settings; ``path=None`` keeps them in memory."""

    def __init__(self, path: Optional[str] = None, env: Optional[Settings] = None):
        self.path = path
        self.env = env or default_settings
        self._values: Dict[str, Any] = {}
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                self._values = json.load(f)

    def _save(self) -> None:
        if self.path:
            atomic_write_json(self.path, self._values)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._save()

    def delete_keys(self, keys: Iterable[str]) -> List[str]:
        removed = [key for key in keys if self._values.pop(key, None) is not None]
        if removed:
            self._save()
        return removed

    def keys(self) -> List[str]:
        return sorted(self._values)

    # n8n connection
    def get_n8n_config(self) -> Optional[N8NConfig]:
        """Stored connection, falling back to the environment."""
        api_url = self._values.get("n8n.api_url")
        api_key = self._values.get("n8n.api_key")
        if api_url and api_key:
            return N8NConfig(
                api_url=api_url,
                api_key=api_key,
                webhook_base_url=self._values.get("n8n.webhook_base_url") or api_url
            )
        return self.env.env_n8n_config()

    def is_n8n_configured(self) -> bool:
        return self.get_n8n_config() is not None

    def save_n8n_config(self, config: N8NConfig) -> None:
        self._values.update({
            "n8n.api_url": config.api_url,
            "n8n.api_key": config.api_key,
            "n8n.webhook_base_url": config.webhook_base_url or config.api_url,
            "n8n.configured_at": datetime.now(timezone.utc).isoformat(),
        })
        self._save()
        logger.info(f"n8n configuration saved ({config.api_url})")

    def clear_n8n_config(self) -> List[str]:
        removed = self.delete_keys(N8N_CONFIG_KEYS)
        logger.info("n8n configuration cleared")
        return removed

    def update_health_check(self, healthy: bool) -> None:
        self.set("n8n.last_health_check", {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "healthy": healthy,
        })

    # setup wizard
    def complete_setup(self, user_id: Optional[str] = None) -> None:
        self._values.update({
            "setup.wizard_completed": True,
            "setup.wizard_completed_at": datetime.now(timezone.utc).isoformat(),
            "setup.wizard_completed_by": user_id or "unknown",
        })
        self._save()

    def is_setup_complete(self) -> bool:
        return bool(self._values.get("setup.wizard_completed"))

    def setup_state(self) -> Dict[str, Any]:
        """``setup.*`` keys with the prefix removed."""
        return {k[len(SETUP_PREFIX):]: v for k, v in self._values.items() if k.startswith(SETUP_PREFIX)}

    def clear_all(self, preserve_audit_log: bool = True) -> List[str]:
        """Drop every setting, optionally keeping ``audit.*`` keys."""
        keys = [k for k in self._values if not (preserve_audit_log and k.startswith(AUDIT_PREFIX))]
        return self.delete_keys(keys)


def resolve_n8n_config(store: SettingsStore, config_override: Optional[N8NConfig] = None) -> N8NConfig:
    """Use an already-fetched config when given, otherwise read the store once."""
    config = config_override or store.get_n8n_config()
    if config is None:
        raise N8NNotConfiguredError()
    return config
