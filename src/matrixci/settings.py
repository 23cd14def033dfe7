from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class Settings:
    watched_branches: list[str] = field(default_factory=lambda: ["master"])
    cache_dir: str = ".matrixci/cache"
    work_dir: str = ".matrixci/work"
    max_workers: Optional[int] = None
    cache_keep: int = 3

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        workers = env.get("MATRIXCI_MAX_WORKERS")
        return cls(
            watched_branches=_split(env.get("MATRIXCI_WATCHED_BRANCHES", "master")) or ["master"],
            cache_dir=env.get("MATRIXCI_CACHE_DIR", ".matrixci/cache"),
            work_dir=env.get("MATRIXCI_WORK_DIR", ".matrixci/work"),
            max_workers=int(workers) if workers else None,
            cache_keep=int(env.get("MATRIXCI_CACHE_KEEP", "3")),
        )
