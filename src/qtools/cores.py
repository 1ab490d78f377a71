# noqa: D401
"""Core specification parsing and allocation.

Grammar::

    core_spec := token (',' token)*
    token     := INT | INT '-' INT

An empty specification means "auto": the caller resolves it against the
detected hardware concurrency with :func:`resolve_cores`.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence

import psutil

from .errors import ParseError, ParseErrorKind

if TYPE_CHECKING:
    from .cluster.types import ClusterServer

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"^\d+$")


def _parse_int(text: str, token: str) -> int:
    if not _INT_RE.match(text):
        raise ParseError(
            ParseErrorKind.INVALID_TOKEN,
            token,
            f"Invalid core token {token!r}: expected an integer or a range like 1-4",
        )
    return int(text)


def parse_core_spec(text: str) -> List[int]:
    """Parse ``"1-3,5,7-9"`` into ``[1, 2, 3, 5, 7, 8, 9]``.

    Output follows first-occurrence order of the expanded tokens; later
    duplicates are dropped. Raises :class:`ParseError` for non-numeric,
    negative or inverted tokens.
    """
    text = (text or "").strip()
    if not text:
        return []

    seen = set()
    cores: List[int] = []
    for raw in text.split(","):
        token = raw.strip()
        if not token:
            raise ParseError(ParseErrorKind.INVALID_TOKEN, raw, f"Empty token in core spec {text!r}")

        if "-" in token[1:]:
            start_text, _, end_text = token.partition("-")
            if not start_text:
                # leading '-' is a negative number, not a range
                raise ParseError(
                    ParseErrorKind.INVALID_TOKEN,
                    token,
                    f"Negative core index not allowed: {token!r}",
                )
            start = _parse_int(start_text.strip(), token)
            end = _parse_int(end_text.strip(), token)
            if start > end:
                raise ParseError(
                    ParseErrorKind.INVALID_RANGE,
                    token,
                    f"Invalid core range {token!r}: start {start} is greater than end {end}",
                )
            expanded: Iterable[int] = range(start, end + 1)
        else:
            expanded = (_parse_int(token, token),)

        for core in expanded:
            if core not in seen:
                seen.add(core)
                cores.append(core)

    return cores


def format_core_spec(cores: Sequence[int]) -> str:
    """Compress a core sequence back into spec text, keeping the given order."""
    parts: List[str] = []
    run_start: Optional[int] = None
    prev: Optional[int] = None
    for core in cores:
        if run_start is not None and prev is not None and core == prev + 1:
            prev = core
            continue
        if run_start is not None:
            parts.append(str(run_start) if run_start == prev else f"{run_start}-{prev}")
        run_start = prev = core
    if run_start is not None:
        parts.append(str(run_start) if run_start == prev else f"{run_start}-{prev}")
    return ",".join(parts)


def detect_core_count() -> int:
    """Logical CPU count of this host (at least 1)."""
    return psutil.cpu_count(logical=True) or 1


def resolve_cores(
    text: str,
    available: Optional[int] = None,
    reserve_master: bool = True,
) -> List[int]:
    """Parse a spec and resolve "auto" against hardware concurrency.

    Auto mode gives one worker per logical core; core 0 is left to the
    master when ``reserve_master`` is set, so workers are ``1..n-1``.
    """
    cores = parse_core_spec(text)
    if cores:
        return cores

    count = available if available is not None else detect_core_count()
    if reserve_master:
        cores = list(range(1, max(count, 2)))
    else:
        cores = list(range(1, count + 1))
    logger.debug(f"Auto core spec resolved to {format_core_spec(cores)} ({count} cores)")
    return cores


def allocate_cluster_cores(
    servers: Sequence["ClusterServer"],
    default_count: int = 0,
) -> Dict[str, List[int]]:
    """Assign global worker core indices to servers.

    Servers with an explicit ``cores`` spec keep it. Every other server gets
    a contiguous block of ``worker_count`` (or ``default_count``) indices,
    allocated in server order from 1, skipping indices that explicit specs
    already claimed.
    """
    allocation: Dict[str, List[int]] = {}
    claimed = set()

    for server in servers:
        if server.cores:
            cores = parse_core_spec(server.cores)
            allocation[server.server_id] = cores
            claimed.update(cores)

    next_core = 1
    for server in servers:
        if server.server_id in allocation:
            continue
        count = server.worker_count if server.worker_count is not None else default_count
        cores = []
        while len(cores) < count:
            if next_core not in claimed:
                cores.append(next_core)
                claimed.add(next_core)
            next_core += 1
        allocation[server.server_id] = cores

    return allocation


__all__ = [
    "allocate_cluster_cores",
    "detect_core_count",
    "format_core_spec",
    "parse_core_spec",
    "resolve_cores",
]
