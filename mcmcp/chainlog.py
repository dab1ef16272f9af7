# -*- coding: utf-8 -*-
"""
Chain state log and participant ledger.

The real deployment keeps one table per chain in a relational store; the engine
only relies on a small contract, captured by ChainLog:

  - create(key)                      register an empty chain
  - latest(key, n)                   the last n rows, oldest first
  - commit(key, rows, mark_picked, update_tip)
                                     append rows and flip flags atomically
  - samples(key)                     the full ordered history

InMemoryChainLog implements the contract for a single process. Each commit is
all-or-nothing: a failure leaves the chain exactly as it was.
"""

from __future__ import annotations

import copy
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import PersistenceError


@dataclass(frozen=True)
class ChainKey:
    owner: str           # participant id, or team id for consensus chains
    task: str            # task name or category
    index: int           # chain replica, 1-based
    prefix: str = ""     # "consensus" for team chains

    @property
    def table_name(self) -> str:
        head = f"{self.prefix}_" if self.prefix else ""
        return f"{head}{self.owner}_{self.task}_no{self.index}"


@dataclass
class Sample:
    state: Optional[List[float]]
    category: Optional[str] = None
    for_prior: bool = False
    gatekeeper: bool = False
    proposal: bool = False
    picked: bool = False
    trial: int = 0
    current_dim: int = 0
    ready: Dict[str, bool] = field(default_factory=dict)
    id: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "state": self.state,
            "category": self.category,
            "for_prior": self.for_prior,
            "gatekeeper": self.gatekeeper,
            "proposal": self.proposal,
            "picked": self.picked,
            "trial": self.trial,
            "current_dim": self.current_dim,
            "ready": dict(self.ready),
        }


class ChainLog:
    """Interface the controllers program against."""

    def create(self, key: ChainKey) -> None:
        raise NotImplementedError

    def exists(self, key: ChainKey) -> bool:
        raise NotImplementedError

    def latest(self, key: ChainKey, n: int = 1) -> List[Sample]:
        raise NotImplementedError

    def samples(self, key: ChainKey) -> List[Sample]:
        raise NotImplementedError

    def commit(
        self,
        key: ChainKey,
        rows: Sequence[Sample] = (),
        mark_picked: Optional[int] = None,
        update_tip: Optional[Mapping[str, bool]] = None,
    ) -> List[Sample]:
        """
        Atomically:
          1) set picked=True on the row `mark_picked` places back from the tip
             (0 = tip, 1 = the row before it)
          2) merge `update_tip` into the tip row's readiness flags
          3) append `rows`
        Returns the appended rows with ids assigned.
        """
        raise NotImplementedError

    # convenience wrappers
    def append(self, key: ChainKey, row: Sample) -> Sample:
        return self.commit(key, [row])[0]

    def tip(self, key: ChainKey) -> Optional[Sample]:
        rows = self.latest(key, 1)
        return rows[0] if rows else None

    def count(self, key: ChainKey) -> int:
        return len(self.samples(key))


class InMemoryChainLog(ChainLog):
    def __init__(self):
        self._chains: Dict[str, List[Sample]] = {}
        self._lock = threading.Lock()

    def _rows(self, key: ChainKey) -> List[Sample]:
        try:
            return self._chains[key.table_name]
        except KeyError:
            raise PersistenceError(f"chain {key.table_name} does not exist") from None

    def create(self, key: ChainKey) -> None:
        with self._lock:
            self._chains.setdefault(key.table_name, [])

    def exists(self, key: ChainKey) -> bool:
        with self._lock:
            return key.table_name in self._chains

    def latest(self, key: ChainKey, n: int = 1) -> List[Sample]:
        with self._lock:
            rows = self._rows(key)
            return [copy.deepcopy(r) for r in rows[-n:]] if n > 0 else []

    def samples(self, key: ChainKey) -> List[Sample]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows(key)]

    def commit(self, key, rows=(), mark_picked=None, update_tip=None):
        with self._lock:
            chain = self._rows(key)
            if (mark_picked is not None or update_tip) and not chain:
                raise PersistenceError(f"chain {key.table_name} is empty")
            if mark_picked is not None and not 0 <= mark_picked < len(chain):
                raise PersistenceError(f"no row {mark_picked} back from the tip of {key.table_name}")

            # stage everything before touching the stored rows
            staged_tip = None
            if update_tip:
                staged_tip = dict(chain[-1].ready)
                staged_tip.update(update_tip)
            next_id = chain[-1].id + 1 if chain else 1
            appended = [replace(copy.deepcopy(r), id=next_id + i) for i, r in enumerate(rows)]

            if mark_picked is not None:
                chain[-1 - mark_picked].picked = True
            if staged_tip is not None:
                chain[-1].ready = staged_tip
            chain.extend(appended)
            return [copy.deepcopy(r) for r in appended]


# -----------------------------
# Participant ledger
# -----------------------------
class ParticipantLedger:
    """Per-participant integer counters plus consensus team membership."""

    def __init__(self):
        self._counters: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._teams: Dict[str, int] = {}
        self._lock = threading.Lock()

    def register(self, participant: str) -> None:
        with self._lock:
            if participant not in self._counters:
                self._counters[participant] = {}

    def increment(self, participant: str, column: str, by: int = 1) -> int:
        with self._lock:
            row = self._counters[participant]
            row[column] = row.get(column, 0) + by
            return row[column]

    def get(self, participant: str, column: str) -> int:
        with self._lock:
            return self._counters.get(participant, {}).get(column, 0)

    def assign_team(self, participant: str, team_size: int) -> int:
        """Teams fill in arrival order: the first team_size joiners form team 1."""
        with self._lock:
            if participant in self._teams:
                return self._teams[participant]
            team = len(self._teams) // team_size + 1
            self._teams[participant] = team
            return team

    def team_members(self, team: int) -> List[str]:
        with self._lock:
            return [p for p, t in self._teams.items() if t == team]


class KeyedLocks:
    """One lock per key, created on demand; different keys never contend."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry = threading.Lock()

    def __call__(self, key: str) -> threading.Lock:
        with self._registry:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock
