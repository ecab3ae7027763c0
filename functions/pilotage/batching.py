"""
Chunked Firestore batch writer.

Firestore rejects a WriteBatch with more than 500 operations, so large
fan-outs are split into groups of at most 499 writes. Each group is one
atomic batch; groups are committed concurrently and the caller waits for
all of them.

Usage::

    writes = [("update", ref, {"gt": 32000}) for ref in refs]
    stats = commit_in_batches(db, writes)
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from pilotage.config import BATCH_COMMIT_WORKERS, BATCH_WRITE_LIMIT

logger = logging.getLogger("pilotage.batching")


class BatchCommitError(Exception):
    """One or more batches failed; committed batches stay applied."""

    def __init__(self, message, stats):
        super().__init__(message)
        self.stats = stats


def chunked(items, size):
    if size < 1:
        raise ValueError("chunk size must be positive")
    items = list(items)
    return [items[i:i + size] for i in range(0, len(items), size)]


def _apply(batch, op, ref, data):
    if op == "update":
        batch.update(ref, data)
    elif op == "set":
        batch.set(ref, data)
    elif op == "merge":
        batch.set(ref, data, merge=True)
    elif op == "delete":
        batch.delete(ref)
    else:
        raise ValueError(f"Unknown batch operation: {op}")


def commit_in_batches(db, writes, max_ops=BATCH_WRITE_LIMIT, max_workers=BATCH_COMMIT_WORKERS):
    """
    Commit ``(op, ref, data)`` writes in groups of at most ``max_ops``.

    ``op`` is one of update / set / merge / delete (``data`` is ignored for
    delete). Returns ``{"writes", "batches", "failed_batches"}``; raises
    BatchCommitError after every batch has finished if any of them failed.
    """
    groups = chunked(writes, max_ops)
    stats = {"writes": 0, "batches": 0, "failed_batches": 0}
    if not groups:
        return stats

    batches = []
    for group in groups:
        batch = db.batch()
        for op, ref, data in group:
            _apply(batch, op, ref, data)
        batches.append((batch, len(group)))

    workers = max(1, min(max_workers, len(batches)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [(pool.submit(batch.commit), size) for batch, size in batches]
        errors = []
        for future, size in futures:
            try:
                future.result()
                stats["batches"] += 1
                stats["writes"] += size
            except Exception as e:
                stats["failed_batches"] += 1
                errors.append(e)
                logger.error(f"Batch of {size} writes failed: {e}")

    if errors:
        raise BatchCommitError(
            f"{stats['failed_batches']} of {len(batches)} batches failed "
            f"({stats['writes']} writes committed)",
            stats,
        )
    return stats
