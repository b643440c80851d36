"""
Circuit selection: a fixed-length, duplicate-free path through the directory.
"""
import random
from typing import List, Optional, Sequence

from onion_config import DEFAULT_PATH_LENGTH
from onion_errors import InsufficientNodes, ValidationError

_SYSTEM_RNG = random.SystemRandom()


def select_circuit(nodes: Sequence, path_length: int = DEFAULT_PATH_LENGTH,
                   rng: Optional[random.Random] = None) -> List:
    """
    Pick path_length distinct nodes uniformly at random, without replacement

    Returned order is traversal order: circuit[0] is the entry node,
    circuit[-1] the exit node.

    Raises:
        InsufficientNodes: fewer distinct nodes than path_length
    """
    if path_length < 1:
        raise ValidationError(f"path_length must be >= 1, got {path_length}")

    # Collapse repeated ids so distinctness holds even for a dirty snapshot
    unique = list({node.node_id: node for node in nodes}.values())
    if len(unique) < path_length:
        raise InsufficientNodes(
            f"Need {path_length} distinct nodes, directory has {len(unique)}"
        )

    return (rng or _SYSTEM_RNG).sample(unique, path_length)
