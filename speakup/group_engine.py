import random
from typing import List, Dict, Iterable, Sequence, TypeVar

T = TypeVar('T')

MIN_GROUP_SIZE = 2
MAX_GROUP_SIZE = 10


def clamp_group_size(size) -> int:
    try:
        size = int(size or 5)
    except (TypeError, ValueError, OverflowError):
        size = 5
    return max(MIN_GROUP_SIZE, min(MAX_GROUP_SIZE, size))


def shuffled(items: Sequence[T], rng: random.Random = None) -> List[T]:
    """Fisher-Yates shuffle of a copy of ``items``."""
    rng = rng or random
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randint(0, i)
        out[i], out[j] = out[j], out[i]
    return out


def chunk_into_groups(items: Sequence[T], group_size: int) -> List[List[T]]:
    """
    Split ``items`` into consecutive groups of ``group_size``.

    A trailing group of one cannot hold a discussion, so that person is
    folded into the previous group.
    """
    size = clamp_group_size(group_size)
    groups = [list(items[i:i + size]) for i in range(0, len(items), size)]
    if len(groups) > 1 and len(groups[-1]) == 1:
        groups[-2].extend(groups.pop())
    return groups


def make_groups(items: Sequence[T], group_size: int, rng: random.Random = None) -> List[List[T]]:
    return chunk_into_groups(shuffled(items, rng), group_size)


def compute_leaderboard(members: Iterable) -> List[Dict]:
    """
    Sum scored totals per user across every group and round.

    ``members`` yields objects with ``user_id``, ``name`` and ``total``.
    Sorted by total descending, then name; equal totals share a rank.
    """
    totals = {}
    for m in members:
        entry = totals.setdefault(m.user_id, {
            'userId': str(m.user_id),
            'name': m.name,
            'total': 0.0,
            'groupsPlayed': 0
        })
        entry['total'] += float(m.total or 0)
        entry['groupsPlayed'] += 1

    board = sorted(totals.values(), key=lambda e: (-e['total'], (e['name'] or '').lower(), e['userId']))

    rank = 0
    previous = None
    for position, entry in enumerate(board, start=1):
        if entry['total'] != previous:
            rank = position
            previous = entry['total']
        entry['rank'] = rank
    return board
