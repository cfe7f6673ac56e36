from .graph_spec import (
    TaskSpec,
    EdgeSpec,
    GraphSpec,
    parse_graph,
    load_graph_file,
)

__all__ = [
    "TaskSpec",
    "EdgeSpec",
    "GraphSpec",
    "parse_graph",
    "load_graph_file",
]
