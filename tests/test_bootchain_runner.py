"""Tests for bootchain/runner.py module.

Uses mocked subprocess; filesystem effects of the external tools are
simulated inside tmp_path.
"""

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from kbootctl.bootchain.models import (
    BootPlan,
    PublishStep,
    RunStep,
    ScratchStep,
    Stage,
    StageKind,
)
from kbootctl.bootchain.recipes import compose_boot_chain
from kbootctl.bootchain.runner import ChainResult, ChainRunner, scratch_copy
from kbootctl.errors import StageFailedError
from kbootctl.types import Arch, ArtifactKind, BootArtifact

from fakes import FakeTools, touch


@pytest.fixture
def runner() -> ChainRunner:
    """Runner with an empty base environment."""
    return ChainRunner(env={})


class TestRiscvChain:
    """Tests for executing the RISC-V chain."""

    def _handlers(self, layout, patch_applied: bool = False):
        def patch_tool(cmd, kwargs):
            if "--dry-run" in cmd:
                return 0 if patch_applied else 1
            return 0

        def cargo(cmd, kwargs):
            touch(layout.kernel)

        def make(cmd, kwargs):
            touch(Path(kwargs["cwd"]) / "bbl", b"bbl")

        return {"patch": patch_tool, "cargo": cargo, "make": make}

    def test_successful_chain(self, make_context, runner) -> None:
        """All three stages run and kernel.img is published."""
        ctx = make_context(arch="riscv64")
        (ctx.layout.kernel_dir / "src/arch/riscv32/board/u540").mkdir(parents=True)
        (ctx.layout.kernel_dir / "src/arch/riscv32/boot").mkdir(parents=True)
        (ctx.layout.kernel_dir / "src/arch/riscv32/board/u540/linker.ld").write_text("ld")
        tools = FakeTools(self._handlers(ctx.layout))

        with patch("subprocess.run", side_effect=tools):
            result = runner.run(compose_boot_chain(ctx))

        assert isinstance(result, ChainResult)
        assert result.stages == ["patch", "compile", "supervisor-wrap"]
        assert result.artifact.kind == ArtifactKind.SUPERVISOR_IMAGE
        assert ctx.layout.kernel_img.read_bytes() == b"bbl"
        assert tools.programs() == ["patch", "patch", "cargo", "configure", "make"]
        assert (ctx.layout.kernel_dir / "src/arch/riscv32/boot/linker64.ld").exists()

    def test_patch_already_applied(self, make_context, runner) -> None:
        """A patch that is already applied is skipped, not a failure."""
        ctx = make_context(arch="riscv32")
        tools = FakeTools(self._handlers(ctx.layout, patch_applied=True))

        with patch("subprocess.run", side_effect=tools):
            result = runner.run(compose_boot_chain(ctx))

        patch_calls = [c for c in tools.calls if c[0] == "patch"]
        assert len(patch_calls) == 1
        assert "--dry-run" in patch_calls[0]
        assert result.stages[-1] == "supervisor-wrap"

    def test_patch_failure_stops_chain(self, make_context, runner) -> None:
        """A patch that cannot be applied aborts before compiling."""
        ctx = make_context(arch="riscv32")
        tools = FakeTools({"patch": lambda cmd, kw: 1})

        with patch("subprocess.run", side_effect=tools):
            with pytest.raises(StageFailedError) as exc_info:
                runner.run(compose_boot_chain(ctx))

        assert exc_info.value.stage == "patch"
        assert exc_info.value.exit_code == 1
        assert "cargo" not in tools.programs()

    def test_wrap_waits_for_kernel(self, make_context, runner) -> None:
        """Without a compiled kernel the supervisor wrap never starts."""
        ctx = make_context(arch="riscv32")
        tools = FakeTools({"patch": lambda cmd, kw: 1 if "--dry-run" in cmd else 0})

        with patch("subprocess.run", side_effect=tools):
            with pytest.raises(StageFailedError) as exc_info:
                runner.run(compose_boot_chain(ctx))

        assert exc_info.value.stage == "compile"
        assert exc_info.value.code == "stage_input_missing"
        assert "configure" not in tools.programs()

    def test_wrap_stage_checks_requirements(self, make_context, runner) -> None:
        """Running the wrap stage alone without a kernel fails up front."""
        ctx = make_context(arch="riscv64")
        wrap = compose_boot_chain(ctx).stages[-1]
        tools = FakeTools()

        with patch("subprocess.run", side_effect=tools):
            with pytest.raises(StageFailedError) as exc_info:
                runner.run_stages([wrap])

        assert exc_info.value.stage == "supervisor-wrap"
        assert exc_info.value.code == "stage_input_missing"
        assert tools.calls == []
        assert not ctx.layout.bbl_dir.exists()

    def test_wrap_failure_is_fatal(self, make_context, runner) -> None:
        """A failing proxy kernel build publishes nothing."""
        ctx = make_context(arch="riscv64", board="u540")
        handlers = self._handlers(ctx.layout)
        handlers["make"] = lambda cmd, kw: 2
        (ctx.layout.kernel_dir / "src/arch/riscv32/board/u540").mkdir(parents=True)
        (ctx.layout.kernel_dir / "src/arch/riscv32/boot").mkdir(parents=True)
        (ctx.layout.kernel_dir / "src/arch/riscv32/board/u540/linker.ld").write_text("ld")
        tools = FakeTools(handlers)

        with patch("subprocess.run", side_effect=tools):
            with pytest.raises(StageFailedError) as exc_info:
                runner.run(compose_boot_chain(ctx))

        assert exc_info.value.stage == "supervisor-wrap"
        assert exc_info.value.exit_code == 2
        assert not ctx.layout.kernel_img.exists()
        configure = next(c for c in tools.calls if c[0].endswith("configure"))
        assert "--enable-sv39" in configure


class TestAarch64Chain:
    """Tests for executing the aarch64 chain and its scratch file."""

    def _handlers(self, ctx, bootloader_code: int = 0):
        seen = {}

        def cargo(cmd, kwargs):
            touch(ctx.layout.kernel)

        def make(cmd, kwargs):
            seen["scratch_during_make"] = ctx.layout.scratch_stripped.exists()
            if bootloader_code == 0:
                touch(ctx.layout.bootloader)
            return bootloader_code

        def objcopy(cmd, kwargs):
            touch(Path(cmd[-1]), b"raw")

        return {"cargo": cargo, "make": make, "objcopy": objcopy}, seen

    def test_success_removes_scratch(self, make_context, runner) -> None:
        """The stripped copy is gone after a successful chain."""
        ctx = make_context(arch="aarch64")
        handlers, seen = self._handlers(ctx)
        tools = FakeTools(handlers)

        with patch("subprocess.run", side_effect=tools):
            result = runner.run(compose_boot_chain(ctx))

        assert result.stages == ["compile", "bootloader-wrap"]
        assert seen["scratch_during_make"] is True
        assert not ctx.layout.scratch_stripped.exists()
        assert ctx.layout.kernel_img.read_bytes() == b"raw"
        assert tools.programs() == [
            "cargo",
            "aarch64-none-elf-strip",
            "make",
            "aarch64-none-elf-objcopy",
        ]

    def test_failure_removes_scratch(self, make_context, runner) -> None:
        """The stripped copy is gone after the bootloader build fails."""
        ctx = make_context(arch="aarch64")
        handlers, seen = self._handlers(ctx, bootloader_code=2)
        tools = FakeTools(handlers)

        with patch("subprocess.run", side_effect=tools):
            with pytest.raises(StageFailedError) as exc_info:
                runner.run(compose_boot_chain(ctx))

        assert exc_info.value.stage == "bootloader-wrap"
        assert exc_info.value.exit_code == 2
        assert seen["scratch_during_make"] is True
        assert not ctx.layout.scratch_stripped.exists()
        assert not ctx.layout.kernel_img.exists()
        assert "aarch64-none-elf-objcopy" not in tools.programs()

    def test_strip_failure_removes_scratch(self, make_context, runner) -> None:
        """A failing strip also leaves no scratch file behind."""
        ctx = make_context(arch="aarch64")
        handlers, _ = self._handlers(ctx)
        handlers["strip"] = lambda cmd, kw: 1
        tools = FakeTools(handlers)

        with patch("subprocess.run", side_effect=tools):
            with pytest.raises(StageFailedError):
                runner.run(compose_boot_chain(ctx))

        assert not ctx.layout.scratch_stripped.exists()
        assert "make" not in tools.programs()


class TestScratchCopy:
    """Tests for scratch_copy context manager."""

    def test_removed_on_exception(self, tmp_path) -> None:
        """The scratch file is removed when the block raises."""
        src = tmp_path / "kernel"
        src.write_bytes(b"elf")
        scratch = tmp_path / "kernel_stripped"

        with pytest.raises(RuntimeError):
            with scratch_copy(src, scratch) as path:
                assert path.read_bytes() == b"elf"
                raise RuntimeError("boom")

        assert not scratch.exists()

    def test_cleanup_failure_is_logged(self, tmp_path, caplog) -> None:
        """A failed removal is logged and does not raise."""
        src = tmp_path / "kernel"
        src.write_bytes(b"elf")
        scratch = tmp_path / "kernel_stripped"

        with patch.object(Path, "unlink", side_effect=PermissionError("busy")):
            with caplog.at_level(logging.WARNING):
                with scratch_copy(src, scratch):
                    pass

        assert "Failed to remove scratch file" in caplog.text

    def test_cleanup_failure_does_not_mask_error(self, tmp_path) -> None:
        """The block's own error wins over a cleanup failure."""
        src = tmp_path / "kernel"
        src.write_bytes(b"elf")

        with patch.object(Path, "unlink", side_effect=PermissionError("busy")):
            with pytest.raises(RuntimeError, match="primary"):
                with scratch_copy(src, tmp_path / "scratch"):
                    raise RuntimeError("primary")


class TestRunnerBehaviour:
    """Generic executor behaviour."""

    def test_first_failure_aborts(self, make_context, runner) -> None:
        """A non-zero exit stops the chain and publishes nothing."""
        ctx = make_context(arch="x86_64")
        tools = FakeTools({"bootimage": lambda cmd, kw: 101})

        with patch("subprocess.run", side_effect=tools):
            with pytest.raises(StageFailedError) as exc_info:
                runner.run(compose_boot_chain(ctx))

        assert exc_info.value.code == "stage_failed"
        assert exc_info.value.exit_code == 101
        assert not ctx.layout.bootimage.exists()

    def test_rebuild_overwrites_artifact(self, make_context, runner) -> None:
        """A second successful build replaces the artifact at the same path."""
        ctx = make_context(arch="x86_64")
        produced = ctx.layout.kernel_dir / "target" / "x86_64" / "bootimage.bin"
        plan = compose_boot_chain(ctx)

        for content in (b"first", b"second"):
            tools = FakeTools({"bootimage": lambda cmd, kw, c=content: touch(produced, c)})
            with patch("subprocess.run", side_effect=tools):
                runner.run(plan)

        assert ctx.layout.bootimage.read_bytes() == b"second"
        assert not produced.exists()

    def test_execution_error(self, make_context, runner) -> None:
        """A program that cannot be started is an execution error."""
        ctx = make_context(arch="x86_64")

        with patch("subprocess.run", side_effect=FileNotFoundError("bootimage")):
            with pytest.raises(StageFailedError) as exc_info:
                runner.run(compose_boot_chain(ctx))

        assert exc_info.value.code == "execution_error"
        assert exc_info.value.stage == "image"

    def test_environment_passed(self, make_context) -> None:
        """Stages see the base environment plus the plan's variables."""
        ctx = make_context(arch="x86_64")
        produced = ctx.layout.kernel_dir / "target" / "x86_64" / "bootimage.bin"
        tools = FakeTools({"bootimage": lambda cmd, kw: touch(produced)})

        with patch("subprocess.run", side_effect=tools) as mock_run:
            ChainRunner(env={"PATH": "/usr/bin"}).run(compose_boot_chain(ctx))

        env = mock_run.call_args.kwargs["env"]
        assert env["PATH"] == "/usr/bin"
        assert env["ARCH"] == "x86_64"
        assert env["CC"] == "gcc"

    def test_log_file(self, tmp_path) -> None:
        """Stage output and command headers go to the log file."""
        log_path = tmp_path / "logs" / "build.log"
        artifact = tmp_path / "out.bin"
        plan = BootPlan(
            arch=Arch.X86_64,
            stages=(
                Stage(
                    name="image",
                    kind=StageKind.IMAGE,
                    steps=(RunStep(("true",), tmp_path),),
                ),
            ),
            artifact=BootArtifact(Arch.X86_64, ArtifactKind.COMBINED_IMAGE, str(artifact), "image"),
        )

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0)
            ChainRunner(log_path=log_path, env={}).run(plan)

        text = log_path.read_text()
        assert "# Command: true" in text
        assert "# Exit code: 0" in text
        assert mock_run.call_args.kwargs["stdout"] is not None

    def test_publish_missing_source(self, tmp_path, runner) -> None:
        """Publishing a file that was never produced fails the stage."""
        stage = Stage(
            name="publish",
            kind=StageKind.AUX,
            steps=(PublishStep(src=tmp_path / "missing", dst=tmp_path / "out"),),
        )
        with pytest.raises(StageFailedError) as exc_info:
            runner.run_stages([stage])
        assert exc_info.value.code == "stage_input_missing"

    def test_scratch_copy_failure(self, tmp_path, runner) -> None:
        """A scratch copy that cannot be made fails the stage before any step runs."""
        src = tmp_path / "kernel"
        touch(src)
        stage = Stage(
            name="bootloader-wrap",
            kind=StageKind.BOOTLOADER_WRAP,
            steps=(
                ScratchStep(
                    src=src,
                    scratch=tmp_path / "missing-dir" / "kernel_stripped",
                    steps=(RunStep(("strip", "--strip-all"), tmp_path),),
                ),
            ),
        )
        with patch("subprocess.run") as mock_run:
            with pytest.raises(StageFailedError) as exc_info:
                runner.run_stages([stage])

        mock_run.assert_not_called()
        assert exc_info.value.code == "execution_error"
        assert "scratch stage failed" in exc_info.value.message
