"""Duplicate scene detection and merging.

Public API:
- DuplicateEngine: server-side groups, local screenshot scan, ignore lists
- DuplicatePair / DuplicateGroup: candidates surfaced to the user
- SceneMerger / MergePlan / plan_merge: merge workflow
- average_hash / hamming_distance / similarity_score: hashing primitives
"""

from .engine import DuplicateEngine, DuplicateGroup, DuplicatePair, find_candidates, ignore_key
from .hashing import average_hash, hamming_distance, similarity_score
from .merge import MergePlan, SceneMerger, plan_merge

__all__ = [
    "DuplicateEngine",
    "DuplicateGroup",
    "DuplicatePair",
    "MergePlan",
    "SceneMerger",
    "average_hash",
    "find_candidates",
    "hamming_distance",
    "ignore_key",
    "plan_merge",
    "similarity_score",
]
