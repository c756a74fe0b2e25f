import json
import os

import pytest

from factory_sync.services.catalog import (
    WorkflowFileError,
    calculate_checksum,
    describe_workflow,
    detect_dependencies,
    extract_webhook_paths,
    get_bundled_workflows,
    node_fingerprint,
    parse_workflow_file,
    read_workflow_file,
    validate_workflows_directory,
)
from conftest import make_workflow, write_bundle


def test_parse_keeps_only_writable_fields_and_strips_credentials():
    content = json.dumps(make_workflow("Vision", credentials=True))

    definition = parse_workflow_file(content, "vision.json")

    assert definition.name == "Vision"
    assert len(definition.nodes) == 2
    assert all(node.credentials is None for node in definition.nodes)
    dumped = definition.model_dump()
    assert "tags" not in dumped
    assert "active" not in dumped
    assert "id" not in dumped


def test_parse_can_keep_credentials():
    definition = parse_workflow_file(json.dumps(make_workflow("Vision", credentials=True)), strip=False)

    assert definition.nodes[1].credentials == {"openAiApi": {"id": "42", "name": "OpenAI"}}


@pytest.mark.parametrize("content", [
    "{not json",
    json.dumps({"nodes": []}),
    json.dumps({"name": "No nodes"}),
    json.dumps([1, 2, 3]),
    json.dumps({"name": "Bad node", "nodes": [{"name": "x"}]}),
])
def test_parse_rejects_malformed_files(content):
    with pytest.raises(WorkflowFileError) as exc_info:
        parse_workflow_file(content, "broken.json")

    assert exc_info.value.filename == "broken.json"


def test_dependencies_from_resource_locator_and_plain_string():
    data = make_workflow("Orchestrator", depends_on=["Scavenger", "Vision"])
    data["nodes"].append({
        "name": "Legacy call",
        "type": "n8n-nodes-base.executeWorkflow",
        "parameters": {"workflowId": "Architecture"},
    })
    data["nodes"].append({
        "name": "Agent tool",
        "type": "@n8n/n8n-nodes-langchain.toolWorkflow",
        "parameters": {"workflowId": {"value": "Vision"}},
    })

    definition = parse_workflow_file(json.dumps(data))

    assert detect_dependencies(definition) == ["Scavenger", "Vision", "Architecture"]


def test_webhook_paths_are_prefixed_and_normalized():
    data = make_workflow("Entry", webhook="/start-project")
    data["nodes"].append({
        "name": "Form",
        "type": "n8n-nodes-base.formTrigger",
        "parameters": {"path": "intake"},
    })

    assert extract_webhook_paths(parse_workflow_file(json.dumps(data))) == ["/webhook/start-project", "/form/intake"]


def test_describe_workflow():
    content = json.dumps(make_workflow("A", depends_on=["B"], webhook="a", credentials=True))

    described = describe_workflow("a.json", content)

    assert described.name == "A"
    assert described.local_version == calculate_checksum(content)
    assert described.short_version == described.local_version[:8]
    assert described.dependencies == ["B"]
    assert described.webhook_paths == ["/webhook/a"]
    assert described.has_credentials is True
    assert described.node_count == 4
    assert "n8n-nodes-base.executeWorkflow" in described.node_types


def test_checksum_is_stable_and_content_sensitive():
    assert calculate_checksum("abc") == calculate_checksum("abc")
    assert calculate_checksum("abc") != calculate_checksum("abd")
    assert len(calculate_checksum("abc")) == 64


def test_fingerprint_matches_models_and_api_dicts():
    data = make_workflow("A", depends_on=["B"])
    definition = parse_workflow_file(json.dumps(data))

    assert node_fingerprint(definition.nodes) == node_fingerprint(list(reversed(data["nodes"])))


def test_bundle_is_sorted_and_skips_unreadable_files(bundle_dir):
    write_bundle(bundle_dir, {
        "b.json": make_workflow("B"),
        "a.json": make_workflow("A"),
    })
    with open(os.path.join(bundle_dir, "broken.json"), "w") as f:
        f.write("{")
    with open(os.path.join(bundle_dir, "README.md"), "w") as f:
        f.write("not a workflow")

    workflows = get_bundled_workflows(bundle_dir)

    assert [w.filename for w in workflows] == ["a.json", "b.json"]


def test_missing_bundle_directory_yields_nothing(tmp_path):
    assert get_bundled_workflows(str(tmp_path / "missing")) == []


def test_read_workflow_file_checksum_matches_bundle(chain_bundle):
    content, definition, checksum = read_workflow_file("a.json", chain_bundle)
    bundled = {w.filename: w for w in get_bundled_workflows(chain_bundle)}

    assert definition.name == "A"
    assert checksum == bundled["a.json"].local_version == calculate_checksum(content)


def test_validate_workflows_directory(tmp_path, chain_bundle):
    assert validate_workflows_directory(chain_bundle) == {
        "valid": True, "workflows_dir": chain_bundle, "files_found": 3
    }

    missing = validate_workflows_directory(str(tmp_path / "nope"))
    assert missing["valid"] is False
    assert "not accessible" in missing["error"]

    empty = tmp_path / "empty"
    empty.mkdir()
    assert validate_workflows_directory(str(empty))["valid"] is False
