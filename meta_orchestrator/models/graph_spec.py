"""
Declarative graph definitions.

A graph can be described in YAML or JSON and validated with pydantic before it
is turned into a TaskGraph:

    name: feature
    tasks:
      - id: analyze
        priority: high
      - id: design
        depends_on: [analyze]
      - id: rollback
        capabilities: [ops]
    edges:
      - source: design
        target: rollback
        condition: on_failure
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..task_graph.dag import EdgeCondition, Priority, TaskGraph, TaskNode

logger = logging.getLogger(__name__)


class TaskSpec(BaseModel):
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    description: str = ""
    priority: Priority = Priority.MEDIUM
    payload: Any = None
    capabilities: List[str] = Field(default_factory=list)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)  # ON_SUCCESS shorthand

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value: Union[str, int, Priority]) -> Priority:
        return Priority.parse(value)

    def to_node(self) -> TaskNode:
        return TaskNode(
            id=self.id,
            name=self.name or self.id,
            description=self.description,
            priority=self.priority,
            payload=self.payload,
            required_capabilities=set(self.capabilities),
            timeout_seconds=self.timeout_seconds,
            metadata=dict(self.metadata),
        )


class EdgeSpec(BaseModel):
    source: str
    target: str
    condition: EdgeCondition = EdgeCondition.ON_SUCCESS


class GraphSpec(BaseModel):
    """Validated graph definition"""
    name: Optional[str] = None
    max_depth: Optional[int] = Field(default=None, ge=1)
    tasks: List[TaskSpec] = Field(default_factory=list)
    edges: List[EdgeSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_ids(self) -> "GraphSpec":
        seen = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id: {task.id}")
            seen.add(task.id)
        return self

    def to_graph(self) -> TaskGraph:
        """
        Build a TaskGraph.

        Raises:
            ValidationError: If a dependency references an unknown task or an
                edge is declared twice
        """
        graph = TaskGraph(name=self.name, max_depth=self.max_depth)
        for task in self.tasks:
            graph.add_task(task.to_node())

        for task in self.tasks:
            for source in task.depends_on:
                graph.add_dependency(source, task.id, EdgeCondition.ON_SUCCESS)

        for edge in self.edges:
            graph.add_dependency(edge.source, edge.target, edge.condition)

        logger.debug(f"Built graph '{graph.name}' with {len(graph)} task(s)")
        return graph


def parse_graph(data: Dict[str, Any]) -> TaskGraph:
    """
    Validate a graph definition dict and build the TaskGraph.

    Raises:
        ValidationError: If the definition is malformed
    """
    try:
        spec = GraphSpec.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid graph definition: {e}") from e
    return spec.to_graph()


def load_graph_file(path: Union[str, Path]) -> TaskGraph:
    """
    Load a graph definition from a .yaml/.yml or .json file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the file can't be parsed or the definition is malformed
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Failed to parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError(f"Graph definition in {path} must be a mapping")

    graph = parse_graph(data)
    logger.info(f"Loaded graph '{graph.name}' from {path}")
    return graph
