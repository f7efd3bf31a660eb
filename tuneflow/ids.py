"""Deterministic id generation.

Issues and recommendations get sequential ids from a generator owned by
one analysis run, so two runs over the same log produce identical records.
"""
import itertools


class IdGenerator:
    """Hands out ``<prefix>-<n>`` ids, counting per prefix from 1."""

    def __init__(self):
        self._counters = {}

    def next(self, prefix: str = "id") -> str:
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}-{next(counter)}"

    def issue(self) -> str:
        return self.next("issue")

    def recommendation(self) -> str:
        return self.next("rec")
