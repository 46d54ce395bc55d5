"""Package graph.

This module handles:
- Dependency edges and evaluation order
- Cycle and undefined-dependency detection
- Sibling build context resolution
"""

from ocigraph.graph.context import BuildContext, BuildContextResolver
from ocigraph.graph.target_graph import TargetGraph

__all__ = ["BuildContext", "BuildContextResolver", "TargetGraph"]
