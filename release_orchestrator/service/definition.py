"""
Pipeline definition loading and stage graph validation.

Definitions are YAML documents listing stages (with dependencies, parallel
flags and policy thresholds), approver entitlements and tool endpoints.
"""

import logging
from pathlib import Path
from typing import Dict, List, Set, Union

import yaml
from pydantic import ValidationError

from .errors import DefinitionValidationError
from .models import PipelineDefinition, StageDefinition

logger = logging.getLogger(__name__)


class StageGraph:
    """
    Directed acyclic graph of stage definitions.

    Stages without an ordering relationship may run concurrently; a stage runs
    only after all of its predecessors reach a terminal state.
    """

    def __init__(self, stages: List[StageDefinition]) -> None:
        self.stages: Dict[str, StageDefinition] = {}
        for stage in stages:
            if stage.name in self.stages:
                raise DefinitionValidationError(
                    f"Duplicate stage name '{stage.name}'", stage=stage.name
                )
            self.stages[stage.name] = stage

        for stage in stages:
            for dependency in stage.depends_on:
                if dependency not in self.stages:
                    raise DefinitionValidationError(
                        f"Stage '{stage.name}' depends on unknown stage '{dependency}'",
                        stage=stage.name,
                    )
                if dependency == stage.name:
                    raise DefinitionValidationError(
                        f"Stage '{stage.name}' depends on itself", stage=stage.name
                    )

        self.order: List[str] = self._topological_order()

    def _topological_order(self) -> List[str]:
        """Kahn's algorithm; ties keep declaration order."""
        indegree = {name: len(set(stage.depends_on)) for name, stage in self.stages.items()}
        ready = [name for name in self.stages if indegree[name] == 0]
        order: List[str] = []

        while ready:
            name = ready.pop(0)
            order.append(name)
            for dependent in self.dependents(name):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(self.stages):
            cyclic = sorted(set(self.stages) - set(order))
            raise DefinitionValidationError(
                f"Stage graph contains a cycle through: {', '.join(cyclic)}",
                stages=cyclic,
            )
        return order

    def dependents(self, name: str) -> List[str]:
        """Stages that directly depend on the named stage, in declaration order."""
        return [
            other.name for other in self.stages.values() if name in other.depends_on
        ]

    def downstream(self, name: str) -> Set[str]:
        """All stages transitively depending on the named stage."""
        seen: Set[str] = set()
        frontier = self.dependents(name)
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            frontier.extend(self.dependents(current))
        return seen

    def predecessors(self, name: str) -> List[str]:
        return list(self.stages[name].depends_on)


def validate_definition(definition: PipelineDefinition) -> StageGraph:
    """
    Check cross-references that pydantic cannot express.

    Returns:
        The validated stage graph

    Raises:
        DefinitionValidationError: On graph errors or unknown tools
    """
    graph = StageGraph(definition.stages)
    if definition.tools:
        for stage in definition.stages:
            if stage.tool not in definition.tools:
                raise DefinitionValidationError(
                    f"Stage '{stage.name}' uses undeclared tool '{stage.tool}'",
                    stage=stage.name,
                )
    return graph


def load_definition_from_yaml(yaml_content: str) -> PipelineDefinition:
    """
    Load a pipeline definition from a YAML string.

    Raises:
        DefinitionValidationError: If the definition is invalid
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise DefinitionValidationError(f"Invalid YAML: {e}")

    if not isinstance(data, dict):
        raise DefinitionValidationError("Pipeline definition must be a mapping")

    try:
        definition = PipelineDefinition(**data)
    except ValidationError as e:
        errors = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
        raise DefinitionValidationError(
            f"Invalid pipeline definition structure: {errors}", errors=errors
        )

    validate_definition(definition)
    logger.info(
        f"Loaded pipeline definition '{definition.name}' v{definition.version} "
        f"with {len(definition.stages)} stages"
    )
    return definition


def load_definition_from_file(path: Union[str, Path]) -> PipelineDefinition:
    """
    Load a pipeline definition from a YAML file.

    Raises:
        DefinitionValidationError: If the definition is invalid
        FileNotFoundError: If the file doesn't exist
    """
    definition_path = Path(path)
    if not definition_path.exists():
        raise FileNotFoundError(f"Pipeline definition not found: {definition_path}")

    with open(definition_path, "r", encoding="utf-8") as f:
        return load_definition_from_yaml(f.read())
