"""
Final selection strategies.

Two independent policies are available and chosen by SELECTION_STRATEGY:

- ranked: highest total_score first
- round_robin: alternate between per-genre pools from a random starting genre,
  ignoring scores entirely
"""
import random
from typing import Dict, List, Mapping, Optional, Sequence

from shelfmate.services.scoring import ScoredCandidate

DEFAULT_LIMIT = 20

RANKED = "ranked"
ROUND_ROBIN = "round_robin"


def select_ranked(scored: Sequence[ScoredCandidate], limit: int = DEFAULT_LIMIT) -> List[ScoredCandidate]:
    """Top `limit` by total_score; equal scores keep their input order."""
    # sorted() is stable, including with reverse=True
    return sorted(scored, key=lambda s: s.total_score, reverse=True)[:limit]


def select_round_robin(
    pools: Mapping[int, Sequence[ScoredCandidate]],
    limit: int = DEFAULT_LIMIT,
    rng: Optional[random.Random] = None,
) -> List[ScoredCandidate]:
    """
    Take one candidate per genre in turn, starting at a random genre.

    Pools are consumed head first; a genre leaves the rotation once its pool is
    empty. A book already taken from an earlier pool is skipped.
    """
    rng = rng or random.Random()

    queues: List[List[ScoredCandidate]] = []
    for pool in pools.values():
        seen_in_pool = set()
        queue = []
        for item in pool:
            if item.key not in seen_in_pool:
                seen_in_pool.add(item.key)
                queue.append(item)
        if queue:
            queues.append(queue)

    selected: List[ScoredCandidate] = []
    if not queues:
        return selected

    taken = set()
    index = rng.randrange(len(queues))
    while queues and len(selected) < limit:
        queue = queues[index]
        item = queue.pop(0)
        if item.key not in taken:
            taken.add(item.key)
            selected.append(item)

        if queue:
            index = (index + 1) % len(queues)
        else:
            del queues[index]
            if queues:
                index %= len(queues)
    return selected


def build_pools(
    pool_keys: Mapping[int, Sequence[str]],
    scored_by_key: Mapping[str, ScoredCandidate],
) -> Dict[int, List[ScoredCandidate]]:
    """Resolve the aggregator's per-genre key lists into scored candidates."""
    return {
        genre_id: [scored_by_key[k] for k in keys if k in scored_by_key]
        for genre_id, keys in pool_keys.items()
    }
