"""
Stackpilot Services

Detection, migration and lifecycle orchestration for the managed stack.
"""

from .detector import ServiceDetector  # noqa: F401
from .lifecycle import LifecycleManager  # noqa: F401
from .migrator import Migrator  # noqa: F401

__all__ = [
    "ServiceDetector",
    "Migrator",
    "LifecycleManager",
]
