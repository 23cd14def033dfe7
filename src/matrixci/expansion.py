# expansion.py
from __future__ import annotations

from itertools import product
from typing import List

from .errors import ConfigurationError
from .model import Job, MatrixCell


def validate_matrix(job: Job) -> None:
    """Reject matrix declarations that would make the job unrunnable."""
    for dim, values in (job.matrix or {}).items():
        values = list(values)
        if not values:
            raise ConfigurationError(
                f"matrix dimension '{dim}' of job '{job.name}' has no values",
                job=job.name,
                dimension=dim,
            )
        dupes = sorted({v for v in values if values.count(v) > 1})
        if dupes:
            raise ConfigurationError(
                f"matrix dimension '{dim}' of job '{job.name}' repeats values {dupes}",
                job=job.name,
                dimension=dim,
            )


def expand(job: Job) -> List[MatrixCell]:
    """
    Cartesian product of the job's matrix dimensions.

    A job without dimensions yields exactly one empty cell. Cells come out in
    declaration order, but nothing downstream may depend on that order.
    """
    validate_matrix(job)
    dims = list((job.matrix or {}).items())
    if not dims:
        return [MatrixCell()]

    names = [d for d, _ in dims]
    return [
        MatrixCell(values=tuple(zip(names, combo)))
        for combo in product(*(list(values) for _, values in dims))
    ]


def cell_display_name(job: Job, cell: MatrixCell) -> str:
    """Render the job's display template for one cell, e.g. 'Clippy (stable) on macos-latest'."""
    if not job.display_name:
        if not cell.values:
            return job.name
        return f"{job.name} ({', '.join(v for _k, v in cell.values)})"
    try:
        return job.display_name.format(**cell.as_dict())
    except (KeyError, IndexError, ValueError):
        return f"{job.display_name} [{cell.label}]"
