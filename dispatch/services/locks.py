"""
Per-Branch Locks

In-process asyncio locks keyed by (purpose, branch id). They serialize work
for one branch inside a single worker process; they do not coordinate
between processes.
"""

import asyncio
from collections import defaultdict

_locks: defaultdict[tuple[str, int], asyncio.Lock] = defaultdict(asyncio.Lock)


def branch_lock(purpose: str, branch_id: int) -> asyncio.Lock:
    """Lock shared by every caller using the same purpose and branch."""
    return _locks[(purpose, branch_id)]


def reset_locks() -> None:
    """Forget all locks (tests create a fresh event loop per run)."""
    _locks.clear()
