"""
Data Contracts - Pydantic Models
Defines the bundle, registry and result structures exchanged by the services.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# BUNDLE
# =============================================================================
class WorkflowNode(BaseModel):
    """Represents a single node in an n8n workflow."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: str
    type: str
    typeVersion: float = 1.0
    position: List[float] = Field(default_factory=lambda: [0, 0])
    parameters: Dict[str, Any] = Field(default_factory=dict)
    credentials: Optional[Dict[str, Any]] = None


class WorkflowDefinition(BaseModel):
    """Writable part of a workflow. Read-only fields (tags, id, active) never live here."""
    name: str
    nodes: List[WorkflowNode]
    connections: Dict[str, Any] = Field(default_factory=dict)
    settings: Optional[Dict[str, Any]] = None
    staticData: Optional[Dict[str, Any]] = None


class BundledWorkflow(BaseModel):
    """Metadata derived from one bundled workflow file."""
    filename: str
    name: str
    local_version: str
    webhook_paths: List[str] = Field(default_factory=list)
    node_count: int = 0
    has_credentials: bool = False
    dependencies: List[str] = Field(default_factory=list)
    node_types: List[str] = Field(default_factory=list)
    node_fingerprint: List[List[str]] = Field(default_factory=list)

    @property
    def short_version(self) -> str:
        return self.local_version[:8]


# =============================================================================
# REGISTRY
# =============================================================================
class ImportStatus(str, Enum):
    PENDING = "pending"
    IMPORTING = "importing"
    CREATED = "created"
    UPDATING = "updating"
    IMPORTED = "imported"
    ACTIVATION_FAILED = "activation_failed"
    FAILED = "failed"
    UPDATE_AVAILABLE = "update_available"


# Statuses that imply the entry points at an existing remote workflow
STATUSES_WITH_REMOTE_ID = frozenset({
    ImportStatus.CREATED,
    ImportStatus.IMPORTED,
    ImportStatus.UPDATING,
    ImportStatus.ACTIVATION_FAILED,
    ImportStatus.UPDATE_AVAILABLE,
})


class RegistryEntry(BaseModel):
    """Local record of one bundled workflow's import state."""
    filename: str
    workflow_name: str
    local_version: str = ""
    local_checksum: Optional[str] = None
    n8n_workflow_id: Optional[str] = None
    is_active: bool = False
    import_status: ImportStatus = ImportStatus.PENDING
    webhook_paths: List[str] = Field(default_factory=list)
    last_import_at: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_consistent(self) -> bool:
        """Remote id present exactly when the status says the workflow exists remotely."""
        return (self.n8n_workflow_id is not None) == (self.import_status in STATUSES_WITH_REMOTE_ID)


# =============================================================================
# DEPENDENCY GRAPH
# =============================================================================
class CircularDependencyResult(BaseModel):
    has_cycle: bool = False
    cycles: List[List[str]] = Field(default_factory=list)
    dependency_order: List[str] = Field(default_factory=list)
    cyclic_nodes: List[str] = Field(default_factory=list)
    external_dependencies: Dict[str, List[str]] = Field(default_factory=dict)


class Level(BaseModel):
    """Exact depth: 0 for a workflow without in-bundle dependencies."""
    kind: Literal["level"] = "level"
    value: int


class CycleBroken(BaseModel):
    """
    Depth of a workflow that reaches a cycle.
    ``approximate`` treats the revisited node as depth 0 and is not a real level.
    """
    kind: Literal["cycle_broken"] = "cycle_broken"
    approximate: int


LevelResult = Union[Level, CycleBroken]


class DependencyNode(BaseModel):
    id: str
    name: str
    filename: str
    level: LevelResult
    node_count: int
    has_credentials: bool
    webhook_paths: List[str]


class DependencyEdge(BaseModel):
    source: str
    target: str


class DependencyGraph(BaseModel):
    nodes: List[DependencyNode]
    edges: List[DependencyEdge]
    levels: Dict[int, List[str]]
    import_order: List[str]
    has_cycles: bool
    cycles: List[List[str]]
    cyclic_nodes: List[str]


# =============================================================================
# VALIDATION
# =============================================================================
class MissingNodeType(BaseModel):
    node_type: str
    workflows: List[str] = Field(default_factory=list)

    @property
    def workflow_count(self) -> int:
        return len(self.workflows)


class NodeValidationResult(BaseModel):
    valid: bool = True
    total_nodes: int = 0
    missing_nodes: List[MissingNodeType] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class PreImportValidationResult(BaseModel):
    valid: bool = True
    node_validation: NodeValidationResult = Field(default_factory=NodeValidationResult)
    dependency_validation: CircularDependencyResult = Field(default_factory=CircularDependencyResult)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class DryRunWorkflow(BaseModel):
    filename: str
    name: str
    action: Literal["create", "update", "skip"]
    reason: str
    current_version: Optional[str] = None
    new_version: str
    node_count: int
    has_credentials: bool
    webhook_paths: List[str]
    dependencies: List[str]


class DryRunResult(BaseModel):
    valid: bool
    validation: PreImportValidationResult
    workflows: List[DryRunWorkflow]
    summary: Dict[str, int]
    import_order: List[str]


# =============================================================================
# IMPORT
# =============================================================================
ImportResultStatus = Literal["imported", "updated", "skipped", "failed", "created", "activation_failed"]


class ImportResult(BaseModel):
    filename: str
    name: Optional[str] = None
    status: ImportResultStatus
    n8n_workflow_id: Optional[str] = None
    webhook_paths: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class FailedActivation(BaseModel):
    filename: str
    workflow_id: str
    error: str
    cleaned: bool = False


class CleanupResult(BaseModel):
    filename: str
    workflow_id: str
    action: Literal["deactivated", "deleted", "error"]
    error: Optional[str] = None


class ImportSummary(BaseModel):
    total: int = 0
    status: Literal["pending", "importing", "complete", "error"] = "pending"
    phase: Optional[Literal["validation", "creating", "activating", "cleaning"]] = None
    results: List[ImportResult] = Field(default_factory=list)
    failed_activations: List[FailedActivation] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    def counts(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "imported": self.count("imported"),
            "updated": self.count("updated"),
            "created": self.count("created"),
            "skipped": self.count("skipped"),
            "failed": self.count("failed"),
            "activation_failed": self.count("activation_failed"),
        }


ImportEventType = Literal[
    "start", "validation", "phase_change", "workflow_start", "workflow_complete", "complete", "error"
]


class ImportEvent(BaseModel):
    type: ImportEventType
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in ("complete", "error")


# =============================================================================
# SYNC
# =============================================================================
class SyncMode(str, Enum):
    DETECT = "detect"
    PULL = "pull"
    RECONCILE = "reconcile"


class SyncEntryResult(BaseModel):
    filename: str
    workflow_name: str
    n8n_workflow_id: Optional[str] = None
    action: Literal["synced", "state_changed", "deleted", "not_imported", "error"]
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    error: Optional[str] = None


class Orphan(BaseModel):
    n8n_workflow_id: str
    name: str
    active: bool = False
    updated_at: Optional[str] = None
    matched_filename: Optional[str] = None
    adopted: bool = False


class SyncConflict(BaseModel):
    name: str
    n8n_workflow_id: str
    filename: Optional[str] = None
    reason: Literal["duplicate_name", "already_registered", "content_mismatch"]
    detail: str = ""


class SyncResult(BaseModel):
    mode: SyncMode
    total: int = 0
    synced: int = 0
    deleted: int = 0
    state_changed: int = 0
    pulled: int = 0
    errors: int = 0
    entries: List[SyncEntryResult] = Field(default_factory=list)
    orphans: List[Orphan] = Field(default_factory=list)
    conflicts: List[SyncConflict] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.errors == 0


# =============================================================================
# RESET
# =============================================================================
ResetMode = Literal["soft", "full", "clear_config", "factory"]


class ResetRequest(BaseModel):
    mode: ResetMode
    confirmation: str
    preserve_n8n_config: Optional[bool] = None
    preserve_audit_log: bool = True


class ResetResult(BaseModel):
    mode: ResetMode
    success: bool = False
    deleted_from_n8n: int = 0
    deactivated: int = 0
    cleared_from_registry: int = 0
    settings_reset: bool = False
    setup_wizard_reset: bool = False
    settings_cleared: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class OperationResult(BaseModel):
    """Generic operation result."""
    status: str
    message: str
    workflow_id: Optional[str] = None


# =============================================================================
# API REQUESTS
# =============================================================================
class ImportRequest(BaseModel):
    force_update: bool = False
    validate_first: bool = True
    rollback_on_failure: bool = False
    cleanup_on_activation_failure: bool = False


class DryRunRequest(BaseModel):
    force_update: bool = False


class SyncRequest(BaseModel):
    mode: SyncMode = SyncMode.DETECT
    include_orphans: bool = True


class FixStuckRequest(BaseModel):
    sync_first: bool = True


class N8NSettingsRequest(BaseModel):
    api_url: str
    api_key: str
    webhook_base_url: Optional[str] = None
    test_connection: bool = True


class SetupCompleteRequest(BaseModel):
    user_id: Optional[str] = None
