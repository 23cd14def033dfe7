# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence

from .model import Job, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def checkout(name: str = "Checkout repo", *, source: str | None = None, ref: str | None = None) -> Step:
    """Fetch the source at the event's ref (or an explicit one) into the cell."""
    data = {k: v for k, v in {"source": source, "ref": ref}.items() if v is not None}
    return Step(name=name, kind="checkout", data=data)


def native_deps(name: str, *packages: str, manager: str = "apt") -> Step:
    """Install platform-native development packages."""
    return Step(name=name, kind="native_deps", data={"packages": list(packages), "manager": manager})


def toolchain(
    name: str,
    channel: str | None = None,
    *,
    components: Sequence[str] = (),
    override: bool = True,
    profile: str = "minimal",
) -> Step:
    """
    Provision a toolchain. channel=None takes the cell's `toolchain` value.
    `components` are add-ons installed with it (e.g. rustfmt, clippy).
    """
    return Step(
        name=name,
        kind="toolchain",
        data={"channel": channel, "components": list(components), "override": override, "profile": profile},
    )


def cache_restore(name: str = "Restore cache") -> Step:
    return Step(name=name, kind="cache_restore")


def cache_save(name: str = "Save cache") -> Step:
    return Step(name=name, kind="cache_save")


def only(step: Step, **conditions: str | Sequence[str]) -> Step:
    """
    Activate `step` only on matching cells, e.g. only(step, platform="ubuntu-latest").
    Non-matching cells skip it without affecting their outcome.
    """
    when = dict(step.when or {})
    for dim, allowed in conditions.items():
        values = (allowed,) if isinstance(allowed, str) else tuple(allowed)
        when[dim] = values
    return replace(step, when=when)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    matrix: Optional[Dict[str, Iterable[str]]] = None,
    inputs: Optional[List[str]] = None,
    env: Optional[Dict[str, object]] = None,
    cwd: str | None = None,
    cache_dirs: Optional[List[str]] = None,
    cache_enabled: bool = True,
    display_name: str | None = None,
) -> Job:
    """
    job("lint", sh(...), sh(...), needs=[...], matrix=matrix(...))

    `steps_list` steps come before positional ones. `cwd` is applied to
    every step that does not set its own.
    """
    ordered = [*(steps_list or []), *steps]
    if not ordered:
        raise ValueError(f"job({name!r}) must have at least one step")
    if cwd is not None:
        ordered = [replace(s, cwd=cwd) if s.cwd is None else s for s in ordered]

    return Job(
        name=name,
        steps=ordered,
        needs=list(needs or []),
        matrix={dim: list(values) for dim, values in (matrix or {}).items()},
        inputs=list(inputs or []),
        # env values end up in subprocess environments
        env={k: str(v) for k, v in (env or {}).items()},
        cache_enabled=cache_enabled,
        cache_dirs=list(cache_dirs or []),
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    """Chained alternative to job(); build() hands everything to job()."""

    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._opts: dict = {"needs": [], "matrix": {}, "inputs": [], "env": {}}

    def depends_on(self, *job_names: str) -> JobBuilder:
        self._opts["needs"].extend(job_names)
        return self

    def across(self, dimension: str, *values: str) -> JobBuilder:
        self._opts["matrix"][dimension] = list(values)
        return self

    def step(self, step: Step) -> JobBuilder:
        self._steps.append(step)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None) -> JobBuilder:
        return self.step(sh(name, run, cwd=cwd))

    def with_inputs(self, *patterns: str) -> JobBuilder:
        self._opts["inputs"].extend(patterns)
        return self

    def with_env(self, **env) -> JobBuilder:
        self._opts["env"].update(env)
        return self

    def cache_dirs(self, *dirs: str) -> JobBuilder:
        self._opts["cache_dirs"] = list(dirs)
        return self

    def cache_behavior(self, *, enabled: bool = True) -> JobBuilder:
        self._opts["cache_enabled"] = enabled
        return self

    def titled(self, display_name: str) -> JobBuilder:
        self._opts["display_name"] = display_name
        return self

    def build(self) -> Job:
        return job(self.name, *self._steps, **self._opts)


def build(name: str) -> JobBuilder:
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(**dimensions: Iterable[str]) -> Dict[str, List[str]]:
    """
    Declare matrix dimensions, in order:

        matrix(platform=["ubuntu-latest", "macos-latest"], toolchain=["stable"])
    """
    return {k: list(v) for k, v in dimensions.items()}


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper:

        from matrixci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)
