"""Error definitions for kbootctl.

Every error carries a stable code that the CLI and callers can match on.
Nothing in this package recovers locally: the first error propagates to the
orchestrator, which reports it and stops.
"""

from __future__ import annotations

# Error code constants
CONFIG_ERROR = "config_error"
TOOLCHAIN_NOT_FOUND = "toolchain_not_found"
STAGE_FAILED = "stage_failed"
STAGE_INPUT_MISSING = "stage_input_missing"
EXECUTION_ERROR = "execution_error"
ARTIFACT_NOT_FOUND = "artifact_not_found"


class KbootError(Exception):
    """Base error for all kbootctl failures."""

    def __init__(self, message: str, code: str = "kboot_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(KbootError):
    """Raised when build parameters cannot be resolved into a valid config."""

    def __init__(self, message: str, code: str = CONFIG_ERROR) -> None:
        super().__init__(message, code=code)


class ToolchainNotFoundError(KbootError):
    """Raised when no toolchain prefix candidate resolves on this host."""

    def __init__(self, arch: str, candidates: list[str]) -> None:
        tried = ", ".join(f"{c}ld" for c in candidates)
        super().__init__(
            f"No usable {arch} toolchain found (tried: {tried})",
            code=TOOLCHAIN_NOT_FOUND,
        )
        self.arch = arch
        self.candidates = candidates


class StageFailedError(KbootError):
    """Raised when a boot-chain stage fails; aborts the remaining stages."""

    def __init__(
        self,
        stage: str,
        message: str,
        exit_code: int | None = None,
        code: str = STAGE_FAILED,
    ) -> None:
        super().__init__(f"[{stage}] {message}", code=code)
        self.stage = stage
        self.exit_code = exit_code


class ArtifactNotFoundError(KbootError):
    """Raised when launching without a previously built artifact."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Boot artifact not found: {path}. Build it first.",
            code=ARTIFACT_NOT_FOUND,
        )
        self.path = path


__all__ = [
    "ARTIFACT_NOT_FOUND",
    "CONFIG_ERROR",
    "EXECUTION_ERROR",
    "STAGE_FAILED",
    "STAGE_INPUT_MISSING",
    "TOOLCHAIN_NOT_FOUND",
    "ArtifactNotFoundError",
    "ConfigurationError",
    "KbootError",
    "StageFailedError",
    "ToolchainNotFoundError",
]
