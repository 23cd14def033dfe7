# provision.py
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Protocol, Sequence, Tuple

from .errors import ProvisionFailure
from .model import Job, MatrixCell


TOOL_HINTS = {
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo": "Install a Rust toolchain via rustup or fix PATH.",
    "git": "Install Git or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "apt-get": "Native dependencies use apt-get; run on a Debian/Ubuntu host or image.",
}

# package manager -> install command template
NATIVE_INSTALLERS: Dict[str, str] = {
    "apt": "sudo apt-get update && sudo apt-get install -y {packages}",
    "apk": "doas apk add --no-cache {packages}",
    "brew": "brew install {packages}",
}


@dataclass(frozen=True)
class ToolchainSpec:
    """The toolchain to provision for a cell."""
    channel: str = "stable"
    components: Tuple[str, ...] = ()
    override: bool = True      # replace any already-installed default toolchain
    profile: str = "minimal"

    @property
    def identity(self) -> str:
        if not self.components:
            return self.channel
        return f"{self.channel}+{'+'.join(sorted(self.components))}"

    def commands(self) -> List[str]:
        install = f"rustup toolchain install {shlex.quote(self.channel)} --profile {shlex.quote(self.profile)}"
        for c in self.components:
            install += f" --component {shlex.quote(c)}"
        cmds = [install]
        if self.override:
            cmds.append(f"rustup override set {shlex.quote(self.channel)}")
        return cmds


@dataclass(frozen=True)
class NativeDeps:
    """Platform-native development packages (e.g. cmake, pkg-config, libgtk-3-dev)."""
    packages: Tuple[str, ...] = ()
    manager: str = "apt"

    def command(self) -> str | None:
        if not self.packages:
            return None
        template = NATIVE_INSTALLERS.get(self.manager)
        if template is None:
            raise ProvisionFailure(
                f"unknown package manager '{self.manager}'",
                known=sorted(NATIVE_INSTALLERS),
            )
        return template.format(packages=" ".join(shlex.quote(p) for p in self.packages))


@dataclass
class Environment:
    """One isolated execution environment, owned by exactly one cell."""
    workdir: Path
    env: Dict[str, str] = field(default_factory=dict)
    cell: MatrixCell = field(default_factory=MatrixCell)
    toolchain: ToolchainSpec | None = None


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class Provisioner(Protocol):
    def prepare(self, job: Job, cell: MatrixCell) -> Environment: ...

    def run_command(self, env: Environment, cmd: str, *, cwd: str | None = None) -> CommandResult: ...

    def install_native(self, env: Environment, native: NativeDeps) -> None: ...

    def install_toolchain(self, env: Environment, toolchain: ToolchainSpec) -> None: ...

    def provision(self, env: Environment, toolchain: ToolchainSpec, native: NativeDeps | None = None) -> Environment: ...


def matrix_env(cell: MatrixCell) -> Dict[str, str]:
    """Expose the cell's assignment to steps as MATRIX_<DIMENSION> variables."""
    return {f"MATRIX_{k.upper()}": v for k, v in cell.values}


class LocalProvisioner:
    """
    Runs every cell on the host, each in its own working directory:

        work_root/
          <job>/
            <cell slug>/
    """

    def __init__(self, work_root: str | Path = ".matrixci/work", *, clean: bool = True):
        self.work_root = Path(work_root).resolve()
        self.clean = clean

    def prepare(self, job: Job, cell: MatrixCell) -> Environment:
        workdir = self.work_root / job.name / cell.slug
        if self.clean and workdir.exists():
            shutil.rmtree(workdir)
        workdir.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env.update(job.env or {})
        env.update(matrix_env(cell))
        return Environment(workdir=workdir, env=env, cell=cell)

    def run_command(self, env: Environment, cmd: str, *, cwd: str | None = None) -> CommandResult:
        run_dir = (env.workdir / (cwd or ".")).resolve()
        if not run_dir.exists():
            raise FileNotFoundError(f"cwd not found: {run_dir}")

        proc = subprocess.run(
            cmd,
            shell=True,
            cwd=str(run_dir),
            env=env.env,
            text=True,
            capture_output=True,
        )
        return CommandResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)

    def _run_all(self, env: Environment, cmds: Sequence[str], what: str) -> None:
        for cmd in cmds:
            try:
                res = self.run_command(env, cmd)
            except OSError as e:
                raise ProvisionFailure(f"{what} could not start: {e}", cmd=cmd) from e
            if res.exit_code != 0:
                tool = cmd.split()[0] if cmd.split() else cmd
                raise ProvisionFailure(
                    f"{what} failed (exit={res.exit_code})",
                    cmd=cmd,
                    hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
                    stderr=res.stderr[-2000:],
                )

    def install_native(self, env: Environment, native: NativeDeps) -> None:
        cmd = native.command()
        if cmd is None:
            return
        self._run_all(env, [cmd], "native dependency install")

    def install_toolchain(self, env: Environment, toolchain: ToolchainSpec) -> None:
        self._run_all(env, toolchain.commands(), f"toolchain '{toolchain.channel}' install")
        env.toolchain = toolchain

    def provision(self, env: Environment, toolchain: ToolchainSpec, native: NativeDeps | None = None) -> Environment:
        if native is not None:
            self.install_native(env, native)
        self.install_toolchain(env, toolchain)
        return env
