"""kbootctl - build and launch orchestration for a multi-architecture kernel.

This package resolves a handful of build parameters into an
architecture-correct boot chain and the emulator invocation that boots it.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
