import json
import os
from typing import Any, Dict, List, Optional

import pytest

from factory_sync.core.client import N8NClientError, workflow_payload
from factory_sync.core.config import N8NConfig, Settings
from factory_sync.services.importer import WorkflowImporter
from factory_sync.services.registry import RegistryStore
from factory_sync.services.settings_store import SettingsStore

INSTALLED_NODE_TYPES = [
    "n8n-nodes-base.manualTrigger",
    "n8n-nodes-base.executeWorkflow",
    "n8n-nodes-base.executeWorkflowTrigger",
    "n8n-nodes-base.webhook",
    "n8n-nodes-base.set",
]

MUTATING_CALLS = {"create", "update", "delete", "activate", "deactivate"}


class FakeN8N:
    """
    In-memory stand-in for N8NClient.
    Records every call as (method, argument); failures are injected by
    workflow name (create/update) or id (activate/delete/deactivate).
    """

    def __init__(self, node_types: Optional[List[str]] = None):
        self.workflows: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.node_types = list(INSTALLED_NODE_TYPES) if node_types is None else node_types
        self.fail_create = set()
        self.fail_update = set()
        self.fail_activate = set()
        self.fail_delete = set()
        self.fail_deactivate = set()
        self._next_id = 1

    # test helpers
    def add_workflow(self, name: str, nodes: Optional[List[Dict]] = None, active: bool = False,
                     workflow_id: Optional[str] = None) -> str:
        workflow_id = workflow_id or self._new_id()
        self.workflows[workflow_id] = {
            "id": workflow_id,
            "name": name,
            "active": active,
            "nodes": nodes or [],
            "connections": {},
            "updatedAt": "2026-01-01T00:00:00.000Z",
        }
        return workflow_id

    def id_of(self, name: str) -> str:
        return next(wf_id for wf_id, wf in self.workflows.items() if wf["name"] == name)

    def calls_of(self, method: str) -> List[Any]:
        return [arg for name, arg in self.calls if name == method]

    @property
    def mutating_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def _new_id(self) -> str:
        workflow_id = f"wf{self._next_id}"
        self._next_id += 1
        return workflow_id

    def _get(self, workflow_id: str) -> Dict[str, Any]:
        if workflow_id not in self.workflows:
            raise N8NClientError(404, f"n8n API error (404): Workflow {workflow_id} not found")
        return self.workflows[workflow_id]

    # client interface
    async def list_workflows(self) -> List[Dict[str, Any]]:
        self.calls.append(("list", None))
        return [dict(wf) for wf in self.workflows.values()]

    async def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        self.calls.append(("get", workflow_id))
        return dict(self._get(workflow_id))

    async def find_workflow_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("find", name))
        for wf in self.workflows.values():
            if wf["name"] == name:
                return dict(wf)
        return None

    async def create_workflow(self, definition) -> Dict[str, Any]:
        self.calls.append(("create", definition.name))
        if definition.name in self.fail_create:
            raise N8NClientError(400, "n8n API error (400): request/body must NOT have additional properties")
        payload = workflow_payload(definition)
        workflow_id = self.add_workflow(definition.name, payload["nodes"])
        return dict(self.workflows[workflow_id])

    async def update_workflow(self, workflow_id: str, definition) -> Dict[str, Any]:
        self.calls.append(("update", workflow_id))
        if definition.name in self.fail_update:
            raise N8NClientError(400, "n8n API error (400): update rejected")
        wf = self._get(workflow_id)
        wf["nodes"] = workflow_payload(definition)["nodes"]
        return dict(wf)

    async def delete_workflow(self, workflow_id: str) -> Dict[str, Any]:
        self.calls.append(("delete", workflow_id))
        if workflow_id in self.fail_delete:
            raise N8NClientError(503, "Network/Connection Failure")
        return self.workflows.pop(workflow_id, None) or self._get(workflow_id)

    async def activate_workflow(self, workflow_id: str) -> Dict[str, Any]:
        self.calls.append(("activate", workflow_id))
        if workflow_id in self.fail_activate:
            raise N8NClientError(400, "n8n API error (400): Workflow references an unpublished workflow")
        wf = self._get(workflow_id)
        wf["active"] = True
        return dict(wf)

    async def deactivate_workflow(self, workflow_id: str) -> Dict[str, Any]:
        self.calls.append(("deactivate", workflow_id))
        if workflow_id in self.fail_deactivate:
            raise N8NClientError(400, "n8n API error (400): already inactive")
        wf = self._get(workflow_id)
        wf["active"] = False
        return dict(wf)

    async def activate_with_retry(self, workflow_id: str, retries: int = 0, initial_delay: float = 0) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                return await self.activate_workflow(workflow_id)
            except N8NClientError:
                if attempt >= retries:
                    raise
                attempt += 1

    async def list_installed_node_types(self) -> List[str]:
        if not self.node_types:
            raise N8NClientError(404, "n8n API error (404): not found")
        return list(self.node_types)

    async def health_check(self) -> bool:
        return True

    async def test_connection(self) -> Dict[str, Any]:
        return {"success": True}

    async def close(self):
        pass

    async def __aenter__(self) -> "FakeN8N":
        return self

    async def __aexit__(self, *exc_info) -> None:
        pass


def make_workflow(name: str, depends_on=(), webhook: Optional[str] = None,
                  node_type: str = "n8n-nodes-base.set", credentials: bool = False) -> Dict[str, Any]:
    """Minimal n8n export: trigger, optional webhook, one node per dependency."""
    nodes = [{
        "id": f"{name}-trigger",
        "name": "When Executed",
        "type": "n8n-nodes-base.executeWorkflowTrigger",
        "typeVersion": 1,
        "position": [0, 0],
        "parameters": {},
    }, {
        "id": f"{name}-work",
        "name": "Work",
        "type": node_type,
        "typeVersion": 3.4,
        "position": [200, 0],
        "parameters": {},
    }]
    if credentials:
        nodes[1]["credentials"] = {"openAiApi": {"id": "42", "name": "OpenAI"}}
    if webhook:
        nodes.append({
            "name": "Webhook",
            "type": "n8n-nodes-base.webhook",
            "typeVersion": 2,
            "position": [0, 200],
            "parameters": {"path": webhook, "httpMethod": "POST"},
        })
    for dep in depends_on:
        nodes.append({
            "name": f"Call {dep}",
            "type": "n8n-nodes-base.executeWorkflow",
            "typeVersion": 1.2,
            "position": [400, 0],
            "parameters": {"workflowId": {"__rl": True, "mode": "list", "value": dep, "cachedResultName": dep}},
        })
    return {
        "name": name,
        "nodes": nodes,
        "connections": {},
        "settings": {"executionOrder": "v1"},
        "tags": [{"name": "product-factory"}],
        "active": True,
        "id": "source-instance-id",
    }


def write_bundle(bundle_dir: str, workflows: Dict[str, Dict[str, Any]]) -> None:
    os.makedirs(bundle_dir, exist_ok=True)
    for filename, data in workflows.items():
        with open(os.path.join(bundle_dir, filename), "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)


@pytest.fixture
def bundle_dir(tmp_path) -> str:
    path = str(tmp_path / "workflows")
    os.makedirs(path)
    return path


@pytest.fixture
def chain_bundle(bundle_dir) -> str:
    """A depends on B, B depends on C, C is independent."""
    write_bundle(bundle_dir, {
        "a.json": make_workflow("A", depends_on=["B"], webhook="start-project"),
        "b.json": make_workflow("B", depends_on=["C"]),
        "c.json": make_workflow("C"),
    })
    return bundle_dir


@pytest.fixture
def fake_n8n() -> FakeN8N:
    return FakeN8N()


@pytest.fixture
def registry() -> RegistryStore:
    return RegistryStore()


@pytest.fixture
def env_settings(tmp_path) -> Settings:
    return Settings(
        n8n_api_url=None,
        n8n_api_key=None,
        workflows_dir=str(tmp_path / "workflows"),
        data_dir=str(tmp_path / "data"),
    )


@pytest.fixture
def settings_store(env_settings) -> SettingsStore:
    return SettingsStore(env=env_settings)


@pytest.fixture
def n8n_config() -> N8NConfig:
    return N8NConfig(api_url="http://n8n.test/api/v1", api_key="test-key")


@pytest.fixture
def importer(fake_n8n, registry, chain_bundle) -> WorkflowImporter:
    return WorkflowImporter(fake_n8n, registry, chain_bundle, activation_pause=0, activation_retries=0, retry_delay=0)
