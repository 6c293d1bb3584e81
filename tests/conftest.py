"""Shared fixtures for kbootctl tests."""

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from kbootctl.bootchain.recipes import ChainContext
from kbootctl.config import Settings
from kbootctl.features import resolve_features
from kbootctl.params import normalize, resolve_layout
from kbootctl.toolchain import select_toolchain


@dataclass
class FakeProbe:
    """HostProbe double with a scripted host."""

    os_name: str = "Linux"
    on_path: set[str] = field(default_factory=set)
    sysroot: Path = Path("/opt/rust/sysroot")
    user: str = "dev"

    def system(self) -> str:
        return self.os_name

    def which(self, program: str) -> str | None:
        if program in self.on_path:
            return f"/usr/bin/{program}"
        return None

    def rust_sysroot(self) -> Path:
        return self.sysroot

    def username(self) -> str:
        return self.user


@pytest.fixture
def make_probe():
    """Factory for FakeProbe instances."""
    return FakeProbe


@pytest.fixture
def probe() -> FakeProbe:
    """Linux host with the primary aarch64 toolchain installed."""
    return FakeProbe(on_path={"aarch64-none-elf-ld"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing every sibling project into tmp_path."""
    return Settings(
        kernel_dir=tmp_path / "kernel",
        bootloader_dir=tmp_path / "bootloader",
        proxy_kernel_dir=tmp_path / "riscv-pk",
        user_dir=tmp_path / "user",
        tools_dir=tmp_path / "tools",
        tests_dir=tmp_path / "tests",
    )


@pytest.fixture
def make_context(settings, probe):
    """Build a ChainContext from raw parameters."""

    def _make(with_sysroot: bool = True, **params) -> ChainContext:
        config = normalize(params)
        return ChainContext(
            config=config,
            features=resolve_features(config),
            toolchain=select_toolchain(config.arch, probe),
            layout=resolve_layout(config, settings),
            bootloader_dir=settings.bootloader_dir.resolve(),
            proxy_kernel_dir=settings.proxy_kernel_dir.resolve(),
            rust_sysroot=probe.rust_sysroot() if with_sysroot else None,
        )

    return _make
