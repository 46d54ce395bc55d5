"""Package declarations.

This module handles:
- Declaration file schema validation
- Loading YAML/JSON declaration files
- Resolving declarations into Package values
"""

from ocigraph.packages.io import load_packages, load_packages_file
from ocigraph.packages.schema import PackageSchema, PackagesFileSchema

__all__ = [
    "PackageSchema",
    "PackagesFileSchema",
    "load_packages",
    "load_packages_file",
]
