"""Compile-time feature resolution.

Derives the feature tokens passed to the kernel build from a BuildConfig.
Each rule contributes independently; the result is the union. Nothing is
rejected here.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from kbootctl.params import BuildConfig
from kbootctl.types import Board, TimerVariant

NOGRAPHIC = "nographic"
RUN_CMDLINE = "run_cmdline"
RASPI3_GENERIC_TIMER = "raspi3_use_generic_timer"
SV39 = "sv39"
BOARD_PREFIX = "board_"

# Consumed by the proxy kernel's configure script
ENABLE_SV39 = "--enable-sv39"

# Boards that drive the ARM generic timer when the generic variant is chosen
GENERIC_TIMER_BOARDS = frozenset({Board.RASPI3})


@dataclass(frozen=True)
class FeatureSet:
    """Feature tokens plus the auxiliary flags for the supervisor wrap.

    Attributes:
        tokens: Unique compile-time feature tokens.
        supervisor_flags: Extra configure flags for the proxy kernel build.
    """

    tokens: frozenset[str] = field(default_factory=frozenset)
    supervisor_flags: tuple[str, ...] = ()

    def __contains__(self, token: object) -> bool:
        return token in self.tokens

    def __len__(self) -> int:
        return len(self.tokens)

    def as_arg(self) -> str:
        """Render tokens for ``--features``, sorted so output is stable."""
        return " ".join(sorted(self.tokens))


def resolve_features(config: BuildConfig) -> FeatureSet:
    """Derive the feature set for a configuration.

    Args:
        config: Normalized build configuration.

    Returns:
        FeatureSet; deterministic for equal configs.
    """
    tokens: set[str] = set()
    supervisor_flags: list[str] = []

    if not config.graphic:
        tokens.add(NOGRAPHIC)

    if config.init:
        tokens.add(RUN_CMDLINE)

    # qemu only emulates the generic timer
    if config.board in GENERIC_TIMER_BOARDS and config.timer == TimerVariant.GENERIC:
        tokens.add(RASPI3_GENERIC_TIMER)

    if config.sv39:
        tokens.add(SV39)
        supervisor_flags.append(ENABLE_SV39)

    if config.board != Board.NONE:
        tokens.add(f"{BOARD_PREFIX}{config.board.value}")

    return FeatureSet(
        tokens=frozenset(tokens),
        supervisor_flags=tuple(supervisor_flags),
    )


__all__ = [
    "ENABLE_SV39",
    "NOGRAPHIC",
    "RASPI3_GENERIC_TIMER",
    "RUN_CMDLINE",
    "SV39",
    "FeatureSet",
    "resolve_features",
]
