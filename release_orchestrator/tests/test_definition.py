"""
Tests for pipeline definition loading and stage graph validation.

Module: tests/test_definition.py
"""

from pathlib import Path

import pytest

from release_orchestrator.service.definition import (
    StageGraph,
    load_definition_from_file,
    load_definition_from_yaml,
    validate_definition,
)
from release_orchestrator.service.errors import DefinitionValidationError
from release_orchestrator.service.models import (
    ApprovalTier,
    PipelineDefinition,
    StageDefinition,
    StageKind,
)

DEFINITION_YAML = """
name: release-pipeline
version: 1.2.0
approvers:
  alice: [peer]
  carol: [mission_owner]
tools:
  scanner:
    kind: http
    url: http://scanner.local/scan
  builder:
    kind: fixed
    result:
      success: true
stages:
  - name: SAST
    kind: scan
    tool: scanner
    thresholds: {max_critical: 0, max_high: 0}
  - name: SCA
    kind: scan
    tool: scanner
    thresholds: {max_critical: 0}
  - name: Build
    kind: build
    tool: builder
    depends_on: [SAST, SCA]
    parallel: false
"""


def stage(name: str, *depends_on: str) -> StageDefinition:
    return StageDefinition(
        name=name, kind=StageKind.SCAN, tool="scanner", depends_on=list(depends_on)
    )


class TestStageGraph:
    """Test suite for StageGraph."""

    def test_topological_order_keeps_declaration_order(self) -> None:
        """Test independent stages keep their declared order."""
        graph = StageGraph(
            [stage("SAST"), stage("SCA"), stage("Build", "SAST", "SCA"), stage("Deploy", "Build")]
        )

        assert graph.order == ["SAST", "SCA", "Build", "Deploy"]

    def test_order_follows_dependencies_not_declaration(self) -> None:
        """Test a stage declared before its dependency is ordered after it."""
        graph = StageGraph([stage("Deploy", "Build"), stage("Build")])

        assert graph.order == ["Build", "Deploy"]

    def test_downstream(self) -> None:
        """Test transitive dependents."""
        graph = StageGraph(
            [stage("SAST"), stage("SCA"), stage("Build", "SAST", "SCA"), stage("Deploy", "Build")]
        )

        assert graph.downstream("SCA") == {"Build", "Deploy"}
        assert graph.downstream("Deploy") == set()
        assert graph.dependents("SAST") == ["Build"]
        assert graph.predecessors("Build") == ["SAST", "SCA"]

    def test_cycle_rejected(self) -> None:
        """Test cyclic graphs are invalid."""
        with pytest.raises(DefinitionValidationError, match="cycle"):
            StageGraph([stage("A", "B"), stage("B", "A"), stage("C")])

    def test_unknown_dependency_rejected(self) -> None:
        with pytest.raises(DefinitionValidationError, match="unknown stage 'Lint'"):
            StageGraph([stage("Build", "Lint")])

    def test_self_dependency_rejected(self) -> None:
        with pytest.raises(DefinitionValidationError, match="depends on itself"):
            StageGraph([stage("Build", "Build")])

    def test_duplicate_stage_rejected(self) -> None:
        with pytest.raises(DefinitionValidationError, match="Duplicate stage name"):
            StageGraph([stage("SAST"), stage("SAST")])


class TestDefinitionLoading:
    """Test suite for YAML definition loading."""

    def test_load_from_yaml(self) -> None:
        """Test a complete definition loads."""
        definition = load_definition_from_yaml(DEFINITION_YAML)

        assert definition.name == "release-pipeline"
        assert definition.version == "1.2.0"
        assert [s.name for s in definition.stages] == ["SAST", "SCA", "Build"]
        assert definition.stage("SAST").thresholds.max_high == 0
        assert definition.stage("Build").parallel is False
        assert definition.approvers["carol"] == [ApprovalTier.MISSION_OWNER]
        assert definition.tools["scanner"].url == "http://scanner.local/scan"
        assert definition.tools["builder"].result.success is True

    def test_invalid_yaml(self) -> None:
        with pytest.raises(DefinitionValidationError, match="Invalid YAML"):
            load_definition_from_yaml("stages: [unclosed")

    def test_non_mapping(self) -> None:
        with pytest.raises(DefinitionValidationError, match="must be a mapping"):
            load_definition_from_yaml("- just\n- a list\n")

    def test_invalid_version(self) -> None:
        """Test version must be semver."""
        with pytest.raises(DefinitionValidationError, match="Invalid pipeline definition"):
            load_definition_from_yaml(DEFINITION_YAML.replace("1.2.0", "v1"))

    def test_http_tool_requires_url(self) -> None:
        broken = DEFINITION_YAML.replace("    url: http://scanner.local/scan\n", "")

        with pytest.raises(DefinitionValidationError):
            load_definition_from_yaml(broken)

    def test_undeclared_tool_rejected(self) -> None:
        """Test stages must reference declared tools."""
        definition = PipelineDefinition(
            name="p",
            version="1.0.0",
            stages=[stage("SAST")],
            tools={"other": {"kind": "fixed", "result": {}}},
        )

        with pytest.raises(DefinitionValidationError, match="undeclared tool 'scanner'"):
            validate_definition(definition)

    def test_load_from_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_definition_from_file(tmp_path / "missing.yaml")

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "pipeline.yaml"
        path.write_text(DEFINITION_YAML, encoding="utf-8")

        definition = load_definition_from_file(path)

        assert len(definition.stages) == 3

    def test_bundled_pipeline_definition_is_valid(self) -> None:
        """Test the pipeline.yaml shipped at the repository root."""
        path = Path(__file__).resolve().parents[2] / "pipeline.yaml"

        definition = load_definition_from_file(path)

        assert StageGraph(definition.stages).order == ["SAST", "SCA", "Build", "Deploy"]
