"""ocigraph - incremental, dependency-driven container image builds.

This package models interrelated container images as a graph, rebuilds
only those whose tracked inputs changed, and exposes already-built
siblings to each build as named build contexts.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
