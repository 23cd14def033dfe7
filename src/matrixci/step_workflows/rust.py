# step_workflows/rust.py
from __future__ import annotations

from typing import List, Sequence

from ..dsl import cache_restore, cache_save, checkout, job, matrix, native_deps, only, sh, toolchain
from ..model import Job, Step

PLATFORMS = ["ubuntu-latest", "windows-latest", "macos-latest"]
TOOLCHAINS = ["stable"]

# only the Linux runners need the GUI/native headers installed
NATIVE_PLATFORM = "ubuntu-latest"
NATIVE_PACKAGES = ("cmake", "pkg-config", "libgtk-3-dev")

MANIFESTS = ["Cargo.lock", "Cargo.toml", "**/Cargo.toml"]
CACHE_DIRS = ["target"]


def cargo(name: str, command: str, args: str = "") -> Step:
    """A cargo invocation as a plain shell step."""
    return sh(name, f"cargo {command} {args}".strip())


def install_native_deps() -> Step:
    return only(
        native_deps("Install dependencies on Ubuntu", *NATIVE_PACKAGES),
        platform=NATIVE_PLATFORM,
    )


def format_check() -> Job:
    return job(
        "format_check",
        checkout(),
        toolchain("Install latest toolchain with rustfmt", "stable", components=["rustfmt"]),
        cargo("Run rustfmt", "fmt", "--all -- --check"),
        display_name="Rustfmt",
        cache_enabled=False,
    )


def lint_check(platforms: Sequence[str] = PLATFORMS, toolchains: Sequence[str] = TOOLCHAINS) -> Job:
    return job(
        "lint_check",
        checkout(),
        toolchain("Install latest toolchain with clippy", components=["clippy"]),
        install_native_deps(),
        cache_restore("Cache Rust dependencies"),
        cargo("Run clippy", "clippy", "-- -D warnings"),
        cache_save(),
        matrix=matrix(platform=platforms, toolchain=toolchains),
        inputs=MANIFESTS,
        cache_dirs=CACHE_DIRS,
        display_name="Clippy ({toolchain}) on {platform}",
    )


def build_and_test(platforms: Sequence[str] = PLATFORMS, toolchains: Sequence[str] = TOOLCHAINS) -> Job:
    return job(
        "build_and_test",
        checkout(),
        install_native_deps(),
        toolchain("Install latest toolchain"),
        cache_restore("Cache Rust dependencies"),
        cargo("Build", "build"),
        cargo("Run tests", "test", "--workspace"),
        cache_save(),
        needs=["format_check", "lint_check"],
        matrix=matrix(platform=platforms, toolchain=toolchains),
        inputs=MANIFESTS,
        cache_dirs=CACHE_DIRS,
        display_name="Rust ({toolchain}) on {platform}",
    )


def canonical_jobs(platforms: Sequence[str] = PLATFORMS, toolchains: Sequence[str] = TOOLCHAINS) -> List[Job]:
    """format_check and lint_check first, build_and_test once both fully pass."""
    return [
        format_check(),
        lint_check(platforms, toolchains),
        build_and_test(platforms, toolchains),
    ]
