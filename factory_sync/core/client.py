"""
HTTP Client Layer - n8n Public API
Async client bound to one explicit n8n connection, with global error handling.
"""
import asyncio
import json
from functools import wraps
from typing import Any, Dict, List, Optional

import httpx

from factory_sync.core.config import N8NConfig, settings
from factory_sync.core.logging import client_logger as logger
from factory_sync.models.schemas import WorkflowDefinition

DEFAULT_WORKFLOW_SETTINGS = {
    "saveManualExecutions": True,
    "saveExecutionProgress": True,
    "executionOrder": "v1"
}


class N8NClientError(Exception):
    """Custom exception for n8n API errors."""
    def __init__(self, status_code: int, message: str, context: str = ""):
        self.status_code = status_code
        self.message = message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "code": self.status_code,
            "message": self.message,
            "context": self.context
        }


def error_message(exc: BaseException) -> str:
    """Human-readable message for any per-item failure."""
    if isinstance(exc, N8NClientError):
        return exc.message
    return str(exc) or exc.__class__.__name__


def workflow_payload(definition: WorkflowDefinition) -> Dict[str, Any]:
    """
    Build the create/update request body.
    Only writable fields are sent; n8n rejects tags, ids and the active flag.
    """
    payload = {
        "name": definition.name,
        "nodes": [node.model_dump(exclude_none=True) for node in definition.nodes],
        "connections": definition.connections,
        "settings": definition.settings or dict(DEFAULT_WORKFLOW_SETTINGS)
    }
    if definition.staticData is not None:
        payload["staticData"] = definition.staticData
    return payload


class N8NClient:
    """
    HTTP Client for the n8n public API.
    One instance per connection config; manages headers, timeouts and error mapping.
    """

    def __init__(
        self,
        config: N8NConfig,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config
        self._headers = {
            "X-N8N-API-KEY": config.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json"
        }
        self._timeout = httpx.Timeout(timeout or settings.http_timeout, read=60.0)
        self._client: Optional[httpx.AsyncClient] = httpx.AsyncClient(
            base_url=config.api_base,
            headers=self._headers,
            timeout=self._timeout,
            transport=transport
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def close(self):
        """Close the HTTP client connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "N8NClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Any:
        """
        Execute an HTTP request with standardized error handling.
        """
        try:
            response = await self._client.request(
                method=method,
                url=endpoint,
                json=json_data,
                params=params
            )
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        except httpx.HTTPStatusError as e:
            try:
                error_detail = e.response.json()
            except ValueError:
                error_detail = e.response.text
            if isinstance(error_detail, dict):
                error_detail = error_detail.get("message") or error_detail.get("error") or json.dumps(error_detail)
            logger.error(f"n8n API request failed: {method} {endpoint} -> {e.response.status_code}")
            raise N8NClientError(
                status_code=e.response.status_code,
                message=f"n8n API error ({e.response.status_code}): {error_detail}",
                context=str(e)
            )

        except httpx.RequestError as e:
            logger.error(f"n8n unreachable: {method} {endpoint}: {e}")
            raise N8NClientError(
                status_code=503,
                message="Network/Connection Failure",
                context=str(e)
            )

    # Convenience methods
    async def get(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json_data: Optional[Dict] = None) -> Any:
        return await self.request("POST", endpoint, json_data=json_data)

    async def put(self, endpoint: str, json_data: Optional[Dict] = None) -> Any:
        return await self.request("PUT", endpoint, json_data=json_data)

    async def delete(self, endpoint: str) -> Any:
        return await self.request("DELETE", endpoint)

    # Workflow operations
    async def list_workflows(self, page_size: int = 250) -> List[Dict[str, Any]]:
        """List every workflow, following n8n's cursor pagination."""
        workflows: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"limit": page_size}
            if cursor:
                params["cursor"] = cursor
            data = await self.get("workflows", params=params)
            workflows.extend(data.get("data", []))
            cursor = data.get("nextCursor")
            if not cursor:
                return workflows

    async def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        return await self.get(f"workflows/{workflow_id}")

    async def find_workflow_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Exact-name lookup; n8n names are the bundle's natural key remotely."""
        for wf in await self.list_workflows():
            if wf.get("name") == name:
                return wf
        return None

    async def create_workflow(self, definition: WorkflowDefinition) -> Dict[str, Any]:
        logger.info(f"Creating workflow '{definition.name}'")
        return await self.post("workflows", json_data=workflow_payload(definition))

    async def update_workflow(self, workflow_id: str, definition: WorkflowDefinition) -> Dict[str, Any]:
        logger.info(f"Updating workflow {workflow_id} ('{definition.name}')")
        return await self.put(f"workflows/{workflow_id}", json_data=workflow_payload(definition))

    async def delete_workflow(self, workflow_id: str) -> Dict[str, Any]:
        logger.info(f"Deleting workflow {workflow_id}")
        return await self.delete(f"workflows/{workflow_id}")

    async def activate_workflow(self, workflow_id: str) -> Dict[str, Any]:
        logger.info(f"Activating workflow {workflow_id}")
        return await self.post(f"workflows/{workflow_id}/activate")

    async def deactivate_workflow(self, workflow_id: str) -> Dict[str, Any]:
        logger.info(f"Deactivating workflow {workflow_id}")
        return await self.post(f"workflows/{workflow_id}/deactivate")

    async def activate_with_retry(
        self,
        workflow_id: str,
        retries: int = 0,
        initial_delay: float = 3.0,
        max_delay: float = 30.0
    ) -> Dict[str, Any]:
        """
        Activate, retrying with exponential backoff capped at ``max_delay``.

        n8n may still be indexing a freshly activated sub-workflow, in which
        case a parent activation fails with a "not published" error that
        clears up after a short wait.
        """
        delay = initial_delay
        attempt = 0
        while True:
            try:
                return await self.activate_workflow(workflow_id)
            except N8NClientError as e:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Activation of {workflow_id} failed ({e.message}), "
                    f"retry {attempt}/{retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)

    async def list_installed_node_types(self) -> List[str]:
        """
        Names of node types installed on the instance.
        Served by the editor endpoint, outside the public API prefix.
        """
        data = await self.get(f"{self.config.base_url}/types/nodes.json")
        if isinstance(data, dict):
            data = data.get("data", [])
        return [item["name"] for item in data if isinstance(item, dict) and item.get("name")]

    async def health_check(self) -> bool:
        """Check if n8n is healthy (basic connectivity)."""
        try:
            response = await self._client.get(f"{self.config.base_url}/healthz", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def test_connection(self) -> Dict[str, Any]:
        """Verify the instance is reachable and the API key is accepted."""
        if not await self.health_check():
            return {"success": False, "error": "n8n instance not reachable"}
        try:
            await self.get("workflows", params={"limit": 1})
        except N8NClientError as e:
            if e.status_code in (401, 403):
                return {"success": False, "error": "Invalid API key or insufficient permissions"}
            return {"success": False, "error": e.message}
        return {"success": True}


def get_client(config: N8NConfig) -> N8NClient:
    """Factory function for a client bound to ``config``."""
    return N8NClient(config)


def safe_tool(func):
    """
    Decorator for MCP tools.
    Catches N8NClientError and returns JSON error response instead of crashing.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except N8NClientError as e:
            return json.dumps(e.to_dict(), indent=2)
        except ValueError as e:
            return json.dumps({
                "status": "error",
                "code": 400,
                "message": f"Validation Error: {str(e)}"
            }, indent=2)
        except Exception as e:
            return json.dumps({
                "status": "fatal_error",
                "code": 500,
                "message": f"Internal MCP Error: {str(e)}"
            }, indent=2)
    return wrapper
