"""
Token Mixer - Round-robin interleaving of per-chain result lists.

Taking one item per chain per round keeps a single high-liquidity chain
from occupying the head of a multi-chain listing.
"""

from typing import Callable, Hashable, Iterable, Mapping, Sequence, TypeVar


T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


def mix(items_by_chain: Mapping[K, Sequence[T]], limit: int) -> list[T]:
    """
    Interleave lists round-robin until `limit` items or all lists run out.
    
    Chains are visited in the mapping's insertion order.
    
    Example:
        mix({1: [a1, a2, a3], 56: [b1]}, limit=4)
        # -> [a1, b1, a2, a3]
    """
    if limit <= 0:
        return []
    
    queues = [list(items) for items in items_by_chain.values() if items]
    result: list[T] = []
    position = 0
    while queues and len(result) < limit:
        remaining = []
        for queue in queues:
            if len(result) >= limit:
                break
            result.append(queue[position])
            if position + 1 < len(queue):
                remaining.append(queue)
        queues = remaining
        position += 1
    return result


def group_by(
    items: Iterable[T],
    key: Callable[[T], K],
    order: Sequence[K] = (),
) -> dict[K, list[T]]:
    """
    Group items by key, preserving first-appearance order.
    
    Keys listed in `order` come first, in that order, even when empty.
    """
    grouped: dict[K, list[T]] = {k: [] for k in order}
    for item in items:
        grouped.setdefault(key(item), []).append(item)
    return grouped


def mix_tokens(tokens: Iterable[T], limit: int, chain_order: Sequence[int] = ()) -> list[T]:
    """Group objects carrying `chain_id` by chain and mix them."""
    return mix(group_by(tokens, lambda t: t.chain_id, chain_order), limit)
