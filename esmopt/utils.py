"""Shared helpers for esmopt.

This module provides small utilities used by the parallel parts of esmopt:
- Resolving how many workers an operation should use
- Splitting a sequence into contiguous, disjoint blocks (one per worker)
"""

import os
from typing import List, Optional, Sequence, Tuple


def resolve_n_jobs(n_jobs: Optional[int] = None) -> int:
    """
    Return the number of workers to use.

    Parameters
    ----------
    n_jobs : int, optional
        Requested number of workers. ``None`` means one worker per available CPU.

    Returns
    -------
    int
        Number of workers, at least 1.

    Raises
    ------
    ValueError
        If `n_jobs` is smaller than 1.
    """
    if n_jobs is None:
        return os.cpu_count() or 1
    if n_jobs < 1:
        raise ValueError(f"n_jobs must be >= 1, got {n_jobs}")
    return n_jobs


def block_bounds(length: int, n_blocks: int) -> List[Tuple[int, int]]:
    """
    Partition ``range(length)`` into `n_blocks` contiguous half-open intervals.

    Every block holds ``length // n_blocks`` items except the last one, which also
    takes the remainder. Blocks never overlap and together cover the whole range.

    Parameters
    ----------
    length : int
        Number of items to partition.
    n_blocks : int
        Number of blocks (at least 1).

    Returns
    -------
    list of (int, int)
        ``(start, stop)`` pairs suitable for slicing.

    Examples
    --------
    >>> block_bounds(10, 3)
    [(0, 3), (3, 6), (6, 10)]
    """
    if n_blocks < 1:
        raise ValueError(f"n_blocks must be >= 1, got {n_blocks}")
    quotient, remainder = divmod(length, n_blocks)
    bounds = []
    for p in range(n_blocks):
        start = p * quotient
        stop = (p + 1) * quotient + (remainder if p == n_blocks - 1 else 0)
        bounds.append((start, stop))
    return bounds


def split_blocks(items: Sequence, n_blocks: int) -> List[Sequence]:
    """Slice `items` into the contiguous blocks given by :func:`block_bounds`."""
    return [items[start:stop] for start, stop in block_bounds(len(items), n_blocks)]
