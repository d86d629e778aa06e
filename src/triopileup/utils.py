from __future__ import annotations

import gzip
import hashlib
import json
import logging
import re
import resource
import sys
from enum import Enum
from pathlib import Path
from typing import Any, TextIO

logger = logging.getLogger(__name__)

_SHARD_SPEC = re.compile(r"^(?P<base>.+)@(?P<n>\d+)(?P<ext>(\.[A-Za-z0-9]+)*)$")

_HASH_SCALE = float(2**64)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.name
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True, default=_jsonable)


def seeded_unit_hash(seed: int, *parts: object) -> float:
    """Map (seed, parts...) to a float in [0, 1), stable across processes and runs.

    Python's builtin ``hash`` is salted per interpreter, so decisions that must be
    reproducible across workers are derived from blake2b instead.
    """
    h = hashlib.blake2b(digest_size=8)
    h.update(str(int(seed)).encode("utf-8"))
    for part in parts:
        h.update(b"\x1f")
        h.update(str(part).encode("utf-8"))
    return int.from_bytes(h.digest(), "big") / _HASH_SCALE


def sharded_filename(spec: str, task_id: int) -> str:
    """Resolve ``name@N.ext`` to ``name-0000T-of-0000N.ext`` for this task.

    Unsharded names are returned unchanged.
    """
    m = _SHARD_SPEC.match(spec)
    if m is None:
        return spec
    n = int(m.group("n"))
    return f"{m.group('base')}-{task_id:05d}-of-{n:05d}{m.group('ext')}"


def peak_memory_mb() -> float:
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS and kilobytes on Linux
    if sys.platform == "darwin":
        return usage / 1e6
    return usage / 1e3

