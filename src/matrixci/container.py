# container.py
from __future__ import annotations

import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple

from .errors import CIError, ProvisionFailure
from .model import Job, MatrixCell
from .provision import TOOL_HINTS, CommandResult, Environment, LocalProvisioner, matrix_env


# ---------------------------------------------------------------------
# Development image description
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ImageSpec:
    """Everything the provisioner needs to build the cell image."""
    base_image: str = "alpine"
    variant: str = "edge"
    user: str = "builder"
    uid: int = 1000
    admin_group: str = "wheel"
    # passwordless privilege escalation, scoped to admin_group
    escalation_rule: str = "permit nopass :{group}"
    escalation_conf: str = "/etc/doas.d/doas.conf"
    packages: Tuple[str, ...] = (
        "doas", "cargo", "rust-src", "freetype-dev", "gtk+3.0-dev",
        "libgit2-dev", "libssh2-dev", "libxcb-dev", "libxfixes-dev",
        "libxkbcommon-dev", "openssl-dev", "python3", "vulkan-loader-dev",
        "wayland-dev", "curl", "wget", "alpine-sdk", "zsh", "fish", "bash",
        "less", "coreutils", "util-linux",
    )
    toolchain_addons: Tuple[str, ...] = (
        "rustfmt", "rust-clippy", "rust-analyzer", "rust-doc", "rust-wasm",
    )
    # use the system OpenSSL instead of a vendored copy
    env: Dict[str, str] = field(default_factory=lambda: {"OPENSSL_NO_VENDOR": "1"})
    shell: str = "bash"
    git_identity_file: str | None = ".gitconfig"

    @property
    def tag(self) -> str:
        return f"{self.base_image}:{self.variant}"


def render_dockerfile(spec: ImageSpec) -> str:
    """Render the cell image as a Dockerfile."""
    pkgs = " ".join([*spec.packages, *spec.toolchain_addons])
    lines = [
        f'ARG VARIANT="{spec.variant}"',
        f"FROM {spec.base_image}:${{VARIANT}}",
        "",
        f'ARG UID="{spec.uid}"',
        f'ARG USER="{spec.user}"',
        "RUN adduser -D ${USER} -u ${UID} && \\",
        f"    addgroup ${{USER}} {spec.admin_group}",
        "",
        f"RUN apk add --no-cache {pkgs}",
        "",
        f'RUN echo "{spec.escalation_rule.format(group=spec.admin_group)}" > {spec.escalation_conf}',
        "",
    ]
    for k, v in spec.env.items():
        lines.append(f"ENV {k}={v}")
    lines += [
        "",
        "USER ${USER}",
        f'SHELL ["{spec.shell}"]',
    ]
    if spec.git_identity_file:
        name = Path(spec.git_identity_file).name
        lines.append(f"COPY {spec.git_identity_file} /home/${{USER}}/{name}")
    return "\n".join(lines) + "\n"


def _check_docker_available() -> None:
    try:
        subprocess.run(["docker", "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise CIError(
            kind="docker_unavailable",
            job="",
            step=None,
            message="Docker is not available",
            details={"hint": TOOL_HINTS["docker"]},
        )


def build_image(spec: ImageSpec, tag: str, *, context_dir: str | Path = ".") -> None:
    """docker build the rendered Dockerfile with `context_dir` as build context."""
    _check_docker_available()
    with tempfile.TemporaryDirectory() as tmp:
        dockerfile = Path(tmp) / "Dockerfile"
        dockerfile.write_text(render_dockerfile(spec), encoding="utf-8")
        proc = subprocess.run(
            ["docker", "build", "-t", tag, "-f", str(dockerfile), str(Path(context_dir).resolve())],
            text=True,
            capture_output=True,
        )
    if proc.returncode != 0:
        raise ProvisionFailure(f"docker build failed (exit={proc.returncode})", tag=tag, stderr=proc.stderr[-2000:])


# ---------------------------------------------------------------------
# Container provisioner
# ---------------------------------------------------------------------

class ContainerProvisioner(LocalProvisioner):
    """
    Runs each cell's commands in a fresh container of `image`, with the
    cell's working directory mounted at /workspace. Host environment
    variables are not forwarded; only job env and MATRIX_* are.
    """

    container_workdir = "/workspace"

    def __init__(self, image: str, work_root: str | Path = ".matrixci/work", *, user: str | None = None):
        super().__init__(work_root)
        self.image = image
        self.user = user
        self._checked = False

    def prepare(self, job: Job, cell: MatrixCell) -> Environment:
        if not self._checked:
            _check_docker_available()
            self._checked = True
        env = super().prepare(job, cell)
        env.env = {**(job.env or {}), **matrix_env(cell)}
        return env

    def docker_command(self, env: Environment, cmd: str, *, cwd: str | None = None) -> list[str]:
        step_cwd = cwd or "."
        container_cwd = f"{self.container_workdir}/{step_cwd}".replace("//", "/")
        argv = ["docker", "run", "--rm", "-v", f"{env.workdir}:{self.container_workdir}", "-w", container_cwd]
        for key, value in env.env.items():
            argv.extend(["-e", f"{key}={value}"])
        if self.user:
            argv.extend(["--user", self.user])
        argv.append(self.image)
        argv.extend(["sh", "-c", cmd])
        return argv

    def run_command(self, env: Environment, cmd: str, *, cwd: str | None = None) -> CommandResult:
        proc = subprocess.run(
            self.docker_command(env, cmd, cwd=cwd),
            shell=False,
            text=True,
            capture_output=True,
        )
        return CommandResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)

    def install_native(self, env: Environment, native) -> None:
        # native packages are baked into the image
        return None

    def install_toolchain(self, env: Environment, toolchain) -> None:
        # the image ships its toolchain; only verify it is usable
        self._run_all(env, ["cargo --version"], f"toolchain '{toolchain.channel}' check")
        env.toolchain = toolchain
