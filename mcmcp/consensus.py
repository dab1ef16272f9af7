# -*- coding: utf-8 -*-
"""
Consensus chains: one chain per (team, class, replica), driven in turn by
every teammate.

Turn-taking uses no push channel and no distributed lock. The tip row of each
chain carries one readiness flag per teammate and exactly one of them is True.
That flag is the capability to act: its holder sees the current/proposal
pair, registers a choice, and hands the flag to the next teammate in the
chain's turn order. Everyone else polls every `poll_interval` seconds and
gets "not_ready".

Round layout in the log (two rows per round):

  [current (trial t), proposal (trial t, ready={...})]

  keep current  -> current.picked,  new round at trial t   around current
  take proposal -> proposal.picked, new round at trial t+1 around proposal
                   (or, once t+1 reaches the quota, no new round: finished)
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Sequence

import numpy as np

from .chainlog import ChainKey, KeyedLocks, Sample
from .controller import RandomWalkProposal, TrialController
from .errors import TurnViolationError
from .proposals import init_uniform, shifted_order, shuffled

logger = logging.getLogger(__name__)

NOT_READY = "not_ready"
READY = "ready"
FINISHED = "finished"

KEEP_CURRENT = 0
TAKE_PROPOSAL = 1


def summarize_accepted(rows: Sequence[Sample]) -> Dict[str, Any]:
    """Mean of accepted states, or the mode of accepted labels for category chains."""
    accepted = [r for r in rows if r.picked]
    if not accepted:
        return {"n_accepted": 0}
    if all(r.state is not None for r in accepted):
        mean = np.mean(np.asarray([r.state for r in accepted], dtype=float), axis=0)
        return {"n_accepted": len(accepted), "mean": mean.tolist()}
    labels = [r.category for r in accepted if r.category is not None]
    mode = Counter(labels).most_common(1)[0][0] if labels else None
    return {"n_accepted": len(accepted), "mode": mode}


class ConsensusCoordinator:
    def __init__(self, controller: TrialController):
        self.controller = controller
        self.config = controller.config
        self.log = controller.log
        self.ledger = controller.ledger
        self.renderer = controller.renderer
        self.rng = controller.rng
        self.proposals = RandomWalkProposal(controller.cov, controller.ranges)
        self.quota = self.config.max_trial
        self._chain_locks = KeyedLocks()
        self._class_orders: Dict[int, List[int]] = {}

    # -----------------------------
    # teams
    # -----------------------------
    def join(self, participant: str) -> Dict[str, Any]:
        cfg = self.config
        team = self.ledger.assign_team(participant, cfg.consensus_n)
        self.ledger.register(participant)
        order = self._class_orders.setdefault(team, shuffled(list(range(len(cfg.classes))), self.rng))
        logger.info("%s joined consensus team %d", participant, team)
        return {
            "class_order": order,
            "classes": cfg.classes,
            "class_questions": [cfg.question_for(c) for c in cfg.classes],
            "n_rest": cfg.n_rest,
            "team_id": team,
            "n_teammates": cfg.consensus_n,
            "n_chain": cfg.n_chain,
        }

    def waiting_room(self, team: int) -> Dict[str, int]:
        return {"count": len(self.ledger.team_members(int(team)))}

    def turn_order(self, team: int, category: str, replica: int) -> List[str]:
        n = self.config.consensus_n
        members = self.ledger.team_members(int(team))
        if len(members) != n:
            raise ValueError(f"team {team} has {len(members)} of {n} members")
        offset = self.config.classes.index(category) * self.config.n_chain + int(replica) - 1
        return [members[i] for i in shifted_order(n, offset)]

    def chain_key(self, team: int, category: str, replica: int) -> ChainKey:
        if category not in self.config.classes:
            raise ValueError(f"unknown class: {category!r}")
        if not 1 <= int(replica) <= self.config.n_chain:
            raise ValueError(f"replica must be in 1..{self.config.n_chain}")
        return ChainKey(str(int(team)), category, int(replica), prefix="consensus")

    # -----------------------------
    # rounds
    # -----------------------------
    def _round(self, state, category: str, trial: int, order: List[str], holder: str) -> List[Sample]:
        proposal = self.proposals.propose(np.asarray(state, dtype=float), category, self.rng)
        idle = {p: False for p in order}
        return [
            Sample(state=list(state), category=category, trial=trial, ready=dict(idle)),
            Sample(
                state=proposal.tolist(),
                category=category,
                proposal=True,
                trial=trial,
                ready={p: p == holder for p in order},
            ),
        ]

    def _next_in_turn(self, order: List[str], participant: str) -> str:
        return order[(order.index(participant) + 1) % len(order)]

    def _seed_if_empty(self, key: ChainKey, category: str, order: List[str]) -> bool:
        with self._chain_locks(key.table_name):
            if self.log.exists(key) and self.log.tip(key) is not None:
                return False
            self.log.create(key)
            state = init_uniform(self.config.dim, self.controller.ranges, self.rng)
            # the first teammate's turn is spent on seeding
            self.log.commit(key, self._round(state, category, 0, order, self._next_in_turn(order, order[0])))
            logger.info("%s seeded; first turn goes to %s", key.table_name, self._next_in_turn(order, order[0]))
            return True

    def poll(self, participant: str, team: int, category: str, replica: int) -> Dict[str, Any]:
        order = self.turn_order(team, category, replica)
        if participant not in order:
            raise TurnViolationError(f"{participant} is not on team {team}")
        key = self.chain_key(team, category, replica)
        if self._seed_if_empty(key, category, order):
            return {"status": NOT_READY, "retry_after": self.config.poll_interval}

        current, proposal = self.log.latest(key, 2)
        if proposal.picked:
            return {"status": FINISHED}
        if not proposal.ready.get(participant, False):
            return {"status": NOT_READY, "retry_after": self.config.poll_interval}

        images = self.renderer.render_batch([current.state, proposal.state])
        return {
            "status": READY,
            "progress": current.trial / self.quota,
            "current_class": category,
            "table_no": int(replica),
            "current_state": current.state,
            "proposal_state": proposal.state,
            "current": images[0],
            "proposal": images[1],
        }

    def register(self, participant: str, team: int, category: str, replica: int, choice: int) -> Dict[str, Any]:
        order = self.turn_order(team, category, replica)
        key = self.chain_key(team, category, replica)
        # read, turn check and commit must not interleave with a second submit
        with self._chain_locks(key.table_name):
            return self._register(participant, key, category, order, choice)

    def _register(self, participant: str, key: ChainKey, category: str, order: List[str], choice: int) -> Dict[str, Any]:
        rows = self.log.latest(key, 2) if self.log.exists(key) else []
        if len(rows) < 2:
            raise TurnViolationError(f"{key.table_name} has not been seeded")
        current, proposal = rows
        if proposal.picked:
            raise TurnViolationError(f"{key.table_name} is already finished")
        if not proposal.ready.get(participant, False):
            raise TurnViolationError(f"it is not {participant}'s turn on {key.table_name}")

        holder = self._next_in_turn(order, participant)
        spent = {participant: False}
        if int(choice) == KEEP_CURRENT:
            trial = current.trial
            self.log.commit(key, self._round(current.state, category, trial, order, holder), mark_picked=1, update_tip=spent)
        elif int(choice) == TAKE_PROPOSAL:
            trial = current.trial + 1
            if trial >= self.quota:
                self.log.commit(key, mark_picked=0, update_tip={p: False for p in order})
                logger.info("%s finished after %d accepted proposals", key.table_name, trial)
                return {
                    "finished": 1,
                    "progress": 1.0,
                    "summary": summarize_accepted(self.log.samples(key)),
                }
            self.log.commit(key, self._round(proposal.state, category, trial, order, holder), mark_picked=0, update_tip=spent)
        else:
            raise ValueError("choice must be 0 (keep current) or 1 (take proposal)")

        logger.info("%s chose %d on %s; turn passes to %s", participant, int(choice), key.table_name, holder)
        return {"finished": 0, "progress": trial / self.quota}
