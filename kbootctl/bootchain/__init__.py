"""Boot chain composition and execution.

This module handles:
- Per-architecture stage recipes (what to run, in which order)
- Executing a composed plan stage by stage
- Publishing the final bootable artifact
"""

from kbootctl.bootchain.models import BootPlan, Stage, StageKind

__all__ = ["BootPlan", "Stage", "StageKind"]

# Access recipes and the executor via kbootctl.bootchain.recipes and
# kbootctl.bootchain.runner.
