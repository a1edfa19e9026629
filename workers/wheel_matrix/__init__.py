"""
wheel_matrix — multi-platform wheel build matrix orchestrator.

Expands a declarative build matrix, runs one isolated job per cell and
aggregates the produced wheels into a single verified bundle.
"""

__version__ = "0.1.0"
ORCHESTRATOR_VERSION = "v1"
PACKAGE_NAME = "wheel_matrix"
SCHEMA_VERSION = "0.1"
