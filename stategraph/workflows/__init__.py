"""
Workflows package - Sample workflow implementations.
"""

from stategraph.workflows.refine import create_refine_workflow

__all__ = [
    "create_refine_workflow",
]
