"""
Normalization Domain

Watches one folder and replaces each newly settled file with the output of
the external normalizer:
- watcher → raw filesystem events, coalesced
- quiescence → one ready signal per write episode
- dispatch → one job per path, worker pool
- invoker / replace → tool run and atomic swap, own writes suppressed
- retry → transient vs permanent failures, bounded backoff
"""

__all__ = [
    "dispatch",
    "engine",
    "errors",
    "invoker",
    "quiescence",
    "replace",
    "retry",
    "suppression",
    "watcher",
]
