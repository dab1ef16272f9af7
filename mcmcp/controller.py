# -*- coding: utf-8 -*-
"""
Trial controller: one state machine for every MCMCP variant.

A participant request reads the chain tip and produces the next trial:

  tip.for_prior == False  ->  likelihood trial   (current state vs proposed state)
  tip.for_prior == True   ->  prior trial        (current class vs proposed class)
  GSP variants            ->  slice trial        (scan one dimension on a grid)
  with small probability  ->  attention check

Registering a choice appends exactly one authoritative row to the chain and
flips the phase. The variants differ only in the strategy bundle they plug in:

  variant       proposals          categories      counts a trial on       limit
  -----------   ----------------   -------------   ---------------------   ---------------------
  independent   random walk / KDE  -               likelihood              max_trial per class
  blockwise     random walk / KDE  KDE / renderer  prior                   max_trial
  gsp           slice grid         -               slice                   k*dim per class
  gsp_prior     slice grid         human           slice + prior           k*(dim+1)

Gatekeeper decisions (too-close auto-accepts, screened proposals, auto-kept
categories) are persisted as rows with gatekeeper=True and then the request
is recomputed, at most `max_auto_steps` times.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from .attention import AttentionCheckBank
from .chainlog import ChainKey, ChainLog, InMemoryChainLog, KeyedLocks, ParticipantLedger, Sample
from .config import ExperimentConfig
from .errors import DimensionMismatchError, GatekeeperRejectionLoop
from .gatekeeper import GaussianKDE, category_acceptance, category_weights, load_gatekeepers
from .proposals import (
    clamp_wrap,
    euclidean_distance,
    gaussian_step,
    init_uniform,
    isotropic_cov,
    random_choice,
    random_other,
    shuffled,
    slice_grid,
)
from .stimuli import make_renderer

logger = logging.getLogger(__name__)

LIKELIHOOD = "likelihood"
PRIOR = "prior"
SLICE = "slice"


# -----------------------------
# Stuck counter (keyed store owned by the controller)
# -----------------------------
class StuckCounter:
    """Consecutive same-category prior outcomes per chain; one lock per chain."""

    def __init__(self):
        self._counts: Dict[str, int] = {}
        self._lock = KeyedLocks()

    def get(self, chain: str) -> int:
        with self._lock(chain):
            return self._counts.get(chain, 0)

    def increment(self, chain: str) -> int:
        with self._lock(chain):
            self._counts[chain] = self._counts.get(chain, 0) + 1
            return self._counts[chain]

    def reset(self, chain: str) -> None:
        with self._lock(chain):
            self._counts[chain] = 0

    def take_if_over(self, chain: str, patience: int) -> bool:
        """Reset and return True when the count exceeds patience."""
        with self._lock(chain):
            if self._counts.get(chain, 0) > patience:
                self._counts[chain] = 0
                return True
            return False


# -----------------------------
# Strategies
# -----------------------------
class RandomWalkProposal:
    """Gaussian step around the current state, wrapped into range."""

    min_distance: Optional[float] = None

    def __init__(self, cov: np.ndarray, ranges: np.ndarray):
        self.cov = cov
        self.ranges = ranges

    def propose(self, current: np.ndarray, category: Optional[str], rng: np.random.Generator) -> np.ndarray:
        step = gaussian_step(current, self.cov, rng)
        return clamp_wrap(step, self.ranges[:, 0], self.ranges[:, 1])


class KDEProposal:
    """Independence sampler: draw straight from the current class's KDE."""

    def __init__(self, models: Mapping[str, GaussianKDE], ranges: np.ndarray, min_distance: float):
        self.models = models
        self.ranges = ranges
        self.min_distance = float(min_distance)

    def propose(self, current: np.ndarray, category: Optional[str], rng: np.random.Generator) -> np.ndarray:
        draw = self.models[category].sample(rng)
        return clamp_wrap(draw, self.ranges[:, 0], self.ranges[:, 1])


class GatekeeperCategories:
    """Boltzmann draw over the class KDEs evaluated at the current state."""

    def __init__(self, models: Mapping[str, GaussianKDE], temperature: float):
        self.models = models
        self.temperature = temperature

    def propose(self, current: np.ndarray, category: str, rng: np.random.Generator) -> str:
        weights = category_weights(self.models, current, self.temperature)
        names = list(weights)
        p = np.array([weights[c] for c in names], dtype=float)
        return names[int(rng.choice(len(names), p=p / p.sum()))]


class RendererCategories:
    """The renderer's predicted label for a perturbed state; never the current class."""

    def __init__(self, renderer, classes: Sequence[str], cov: np.ndarray, ranges: np.ndarray):
        self.renderer = renderer
        self.classes = list(classes)
        self.cov = cov
        self.ranges = ranges

    def propose(self, current: np.ndarray, category: str, rng: np.random.Generator) -> str:
        candidate = clamp_wrap(gaussian_step(current, self.cov, rng), self.ranges[:, 0], self.ranges[:, 1])
        label = self.renderer.render(candidate).label
        if label is None or label == category or label not in self.classes:
            return random_other(self.classes, category, rng)
        return label


class HumanAcceptance:
    def decide_state(self, current, proposal, category, rng) -> Optional[bool]:
        return None

    def decide_category(self, state, current_class, proposed_class, rng) -> Optional[bool]:
        return None


class GatekeeperScreen(HumanAcceptance):
    """At `rate`, the gatekeeper takes the decision away from the participant."""

    def __init__(self, models: Mapping[str, GaussianKDE], temperature: float, rate: float):
        self.models = models
        self.temperature = temperature
        self.rate = rate

    def decide_state(self, current, proposal, category, rng):
        if rng.random() >= self.rate:
            return None
        return bool(rng.random() < self.models[category].acceptance(current, proposal, self.temperature))

    def decide_category(self, state, current_class, proposed_class, rng):
        if rng.random() >= self.rate:
            return None
        a = category_acceptance(self.models, current_class, proposed_class, state, self.temperature)
        return bool(rng.random() < a)


@dataclass
class Termination:
    limit: int

    def finished(self, n_trial: int) -> bool:
        return n_trial >= self.limit

    def progress(self, n_trial: int) -> float:
        return min(1.0, n_trial / self.limit)


# -----------------------------
# Controller
# -----------------------------
class TrialController:
    def __init__(
        self,
        config: ExperimentConfig,
        log: Optional[ChainLog] = None,
        ledger: Optional[ParticipantLedger] = None,
        renderer=None,
        gatekeepers: Optional[Mapping[str, GaussianKDE]] = None,
        attention: Optional[AttentionCheckBank] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config.validate()
        self.variant = config.variant
        self.log = log if log is not None else InMemoryChainLog()
        self.ledger = ledger if ledger is not None else ParticipantLedger()
        self.rng = rng if rng is not None else np.random.default_rng(config.seed)
        self.renderer = renderer if renderer is not None else make_renderer(config, self.rng)
        self.stuck = StuckCounter()
        self.ranges = config.range_array()
        self.cov = isotropic_cov(config.dim, config.proposal_bandwidth)

        if gatekeepers is None and config.gatekeeper:
            gatekeepers = load_gatekeepers(config.gatekeeper_dir, config.classes, bandwidth=config.gatekeeper_bandwidth)
        self.gatekeepers = dict(gatekeepers) if gatekeepers else None
        if self.gatekeepers is not None:
            for cate, model in self.gatekeepers.items():
                if model.dimensionality != config.dim:
                    raise DimensionMismatchError(model.dimensionality, config.dim, what=f"gatekeeper {cate}")

        if attention is None and config.attention_check:
            attention = AttentionCheckBank(config.attention_check_dir, self.ledger, config.max_attention_failures)
        self.attention = attention

        # strategy bundle
        if self.gatekeepers is not None:
            self.proposals = KDEProposal(self.gatekeepers, self.ranges, config.min_proposal_distance)
            self.categories = GatekeeperCategories(self.gatekeepers, config.temperature)
        else:
            self.proposals = RandomWalkProposal(self.cov, self.ranges)
            self.categories = RendererCategories(self.renderer, config.classes, self.cov, self.ranges)
        if self.gatekeepers is not None and config.gatekeeper_screen_rate > 0:
            self.acceptance = GatekeeperScreen(self.gatekeepers, config.temperature, config.gatekeeper_screen_rate)
        else:
            self.acceptance = HumanAcceptance()

        if self.variant == "gsp":
            self.termination = Termination(config.max_samples_per_class * config.dim)
        elif self.variant == "gsp_prior":
            self.termination = Termination(config.max_samples_per_class * (config.dim + 1))
        else:
            self.termination = Termination(config.max_trial)

    # -----------------------------
    # chain bookkeeping
    # -----------------------------
    @property
    def per_class(self) -> bool:
        return self.variant in ("independent", "gsp")

    def chain_key(self, participant: str, index: int, category: Optional[str] = None) -> ChainKey:
        if self.per_class:
            if category not in self.config.classes:
                raise ValueError(f"unknown class: {category!r}")
            return ChainKey(participant, f"{self.config.task}_{category}", int(index))
        return ChainKey(participant, self.config.task, int(index))

    def _counter(self, category: Optional[str]) -> str:
        if self.per_class:
            return f"{self.config.task}_{category}_trials"
        return f"{self.config.task}_trials"

    def _pick_chain(self, chain_index: Optional[int]) -> int:
        if chain_index is None:
            return int(self.rng.integers(1, self.config.n_chain + 1))
        if not 1 <= int(chain_index) <= self.config.n_chain:
            raise ValueError(f"chain index must be in 1..{self.config.n_chain}")
        return int(chain_index)

    def _tip(self, key: ChainKey) -> Sample:
        tip = self.log.tip(key)
        if tip is None:
            raise ValueError(f"chain {key.table_name} has not been set up")
        return tip

    def _vector(self, value: Any) -> List[float]:
        vec = np.asarray(value, dtype=float)
        if vec.ndim != 1 or vec.shape[0] != self.config.dim:
            raise DimensionMismatchError(vec.size, self.config.dim, what="choice")
        return vec.tolist()

    def _initial_state(self, category: str) -> List[float]:
        if self.gatekeepers is not None and self.variant in ("blockwise", "independent"):
            draw = self.gatekeepers[category].sample(self.rng)
            return clamp_wrap(draw, self.ranges[:, 0], self.ranges[:, 1]).tolist()
        return init_uniform(self.config.dim, self.ranges, self.rng).tolist()

    # -----------------------------
    # set up
    # -----------------------------
    def set_up(self, participant: str) -> Dict[str, Any]:
        cfg = self.config
        self.ledger.register(participant)
        if self.variant == "blockwise":
            order = shuffled(cfg.classes, self.rng)
            for i in range(1, cfg.n_chain + 1):
                cate = order[(i - 1) % len(order)]
                self._seed(self.chain_key(participant, i), Sample(state=self._initial_state(cate), category=cate))
        elif self.variant == "gsp_prior":
            for i in range(1, cfg.n_chain + 1):
                cate = random_choice(cfg.classes, self.rng)
                self._seed(self.chain_key(participant, i), Sample(state=self._initial_state(cate), category=cate))
        else:
            for i in range(1, cfg.n_chain + 1):
                for cate in cfg.classes:
                    key = self.chain_key(participant, i, cate)
                    self._seed(key, Sample(state=self._initial_state(cate), category=cate))

        logger.info("%s set up %d %s chain(s) for %s", cfg.task, cfg.n_chain, self.variant, participant)
        return {
            "classes": cfg.classes,
            "class_questions": [cfg.question_for(c) for c in cfg.classes],
            "class_order": shuffled(list(range(len(cfg.classes))), self.rng),
            "n_rest": cfg.n_rest,
            "n_chain": cfg.n_chain,
        }

    def _seed(self, key: ChainKey, row: Sample) -> None:
        self.log.create(key)
        self.log.append(key, row)
        self.stuck.reset(key.table_name)

    # -----------------------------
    # next trial
    # -----------------------------
    def next_trial(
        self,
        participant: str,
        category: Optional[str] = None,
        chain_index: Optional[int] = None,
    ) -> Dict[str, Any]:
        index = self._pick_chain(chain_index)
        key = self.chain_key(participant, index, category)

        if self.variant in ("gsp", "gsp_prior"):
            return self._slice_or_prior(key, self._tip(key), index)

        if (
            self.attention is not None
            and self.config.attention_check_rate > 0
            and self.rng.random() < self.config.attention_check_rate
        ):
            trial = self.attention.draw(self._tip(key).category, self.rng)
            trial["table_no"] = index
            return trial

        for _ in range(self.config.max_auto_steps):
            tip = self._tip(key)
            if tip.for_prior:
                trial = self._prior_trial(key, tip)
            else:
                trial = self._likelihood_trial(key, tip)
            if trial is not None:
                trial["table_no"] = index
                return trial
        raise GatekeeperRejectionLoop(
            f"{key.table_name}: gatekeeper settled {self.config.max_auto_steps} trials in a row without a participant"
        )

    def _likelihood_trial(self, key: ChainKey, tip: Sample) -> Optional[Dict[str, Any]]:
        current = np.asarray(tip.state, dtype=float)
        cate = tip.category
        proposal = self.proposals.propose(current, cate, self.rng)

        auto: Optional[np.ndarray] = None
        min_distance = getattr(self.proposals, "min_distance", None)
        if min_distance is not None and euclidean_distance(current, proposal) < min_distance:
            auto = proposal if self.rng.random() < 0.5 else current
        else:
            verdict = self.acceptance.decide_state(current, proposal, cate, self.rng)
            if verdict is not None:
                auto = proposal if verdict else current
        if auto is not None:
            self.log.append(
                key,
                Sample(
                    state=np.asarray(auto, dtype=float).tolist(),
                    category=cate,
                    for_prior=self.variant == "blockwise",
                    gatekeeper=True,
                    trial=tip.trial,
                ),
            )
            return None

        images = self.renderer.render_batch([current, proposal])
        return {
            "trial_type": LIKELIHOOD,
            "current_class": cate,
            "current_state": current.tolist(),
            "proposal_state": proposal.tolist(),
            "current": images[0],
            "proposal": images[1],
        }

    def _prior_trial(self, key: ChainKey, tip: Sample) -> Optional[Dict[str, Any]]:
        current = np.asarray(tip.state, dtype=float)
        cate = tip.category
        table = key.table_name

        if self.stuck.take_if_over(table, self.config.stuck_patience):
            proposal = random_other(self.config.classes, cate, self.rng)
            logger.warning("%s is stuck in %s, switching to another class: %s", table, cate, proposal)
        else:
            proposal = self.categories.propose(current, cate, self.rng)
            keep = None
            if proposal == cate:
                keep = True
            else:
                verdict = self.acceptance.decide_category(current, cate, proposal, self.rng)
                if verdict is not None:
                    keep = not verdict
            if keep is not None:
                settled = cate if keep else proposal
                if settled == cate:
                    self.stuck.increment(table)
                else:
                    self.stuck.reset(table)
                self.log.append(
                    key,
                    Sample(state=current.tolist(), category=settled, gatekeeper=True, trial=tip.trial),
                )
                return None

        return {
            "trial_type": PRIOR,
            "current_class": cate,
            "current_state": current.tolist(),
            "current_stimulus": self.renderer.render(current).image,
            "current": cate,
            "proposal": proposal,
        }

    def _slice_or_prior(self, key: ChainKey, tip: Sample, index: int) -> Dict[str, Any]:
        dim = self.config.dim
        if self.variant == "gsp_prior" and tip.current_dim >= dim:
            return {
                "trial_type": PRIOR,
                "prior": True,
                "current_class": tip.category,
                "current_state": tip.state,
                "stimuli": self.renderer.render_batch([tip.state])[0],
                "table_no": index,
            }
        current_dim = tip.current_dim % dim
        points, values = slice_grid(tip.state, current_dim, tuple(self.ranges[current_dim]), self.config.resolution)
        return {
            "trial_type": SLICE,
            "current_class": tip.category,
            "current_state": tip.state,
            "proposed_values": values,
            "current_dim": current_dim,
            "stimuli": self.renderer.render_batch(points),
            "table_no": index,
        }

    # -----------------------------
    # register
    # -----------------------------
    def register_choice(
        self,
        participant: str,
        trial_type: str,
        choice: Any,
        chain_index: int,
        category: Optional[str] = None,
        trial_index: Optional[int] = None,
    ) -> Dict[str, Any]:
        key = self.chain_key(participant, self._pick_chain(chain_index), category)
        tip = self._tip(key)
        counter = self._counter(category)
        n_trial = self.ledger.get(participant, counter)

        if trial_type == LIKELIHOOD:
            if self.variant not in ("blockwise", "independent") or tip.for_prior:
                raise ValueError(f"{key.table_name} is not waiting for a likelihood choice")
            counts = self.variant == "independent"
            row = Sample(
                state=self._vector(choice),
                category=tip.category,
                for_prior=self.variant == "blockwise",
                trial=n_trial + 1 if counts else n_trial,
            )
            self.log.append(key, row)
            self.ledger.increment(participant, f"{tip.category}_ss")
            if counts:
                n_trial = self.ledger.increment(participant, counter)
            logger.info("Trial%s: %s selected %s for %s", trial_index or n_trial, participant, row.state, tip.category)

        elif trial_type == PRIOR:
            if choice not in self.config.classes:
                raise ValueError(f"unknown class: {choice!r}")
            if self.variant == "blockwise":
                if not tip.for_prior:
                    raise ValueError(f"{key.table_name} is not waiting for a prior choice")
                self.log.append(key, Sample(state=tip.state, category=choice, trial=n_trial + 1))
                if choice == tip.category:
                    self.stuck.increment(key.table_name)
                else:
                    self.stuck.reset(key.table_name)
            elif self.variant == "gsp_prior":
                if tip.current_dim < self.config.dim:
                    raise ValueError(f"{key.table_name} is still sweeping dimensions")
                self.log.append(key, Sample(state=tip.state, category=choice, current_dim=0, trial=n_trial + 1))
            else:
                raise ValueError(f"{self.variant} chains have no prior trials")
            n_trial = self.ledger.increment(participant, counter)
            logger.info("Trial%s: %s selected %s (was %s)", trial_index or n_trial, participant, choice, tip.category)

        elif trial_type == SLICE:
            if self.variant not in ("gsp", "gsp_prior"):
                raise ValueError(f"{self.variant} chains have no slice trials")
            if self.variant == "gsp_prior" and tip.current_dim >= self.config.dim:
                raise ValueError(f"{key.table_name} is waiting for a prior choice")
            current_dim = tip.current_dim % self.config.dim
            if np.ndim(choice) == 0:
                state = list(tip.state)
                state[current_dim] = float(choice)
            else:
                state = self._vector(choice)
            self.log.append(
                key,
                Sample(state=state, category=tip.category, current_dim=tip.current_dim + 1, trial=n_trial + 1),
            )
            n_trial = self.ledger.increment(participant, counter)
            logger.info("%s updated dimension %d with %s for %s", participant, current_dim + 1, self.variant, tip.category)

        else:
            raise ValueError(f"unknown trial type: {trial_type!r}")

        done = self.termination.finished(n_trial)
        return {"finished": int(done), "progress": 1.0 if done else self.termination.progress(n_trial)}

    def register_attention(self, participant: str, passed: bool) -> Dict[str, Any]:
        if self.attention is None:
            raise ValueError("attention checks are not enabled for this task")
        return self.attention.register(participant, bool(passed))

    # -----------------------------
    # export
    # -----------------------------
    def chain_samples(self, participant: str, index: int, category: Optional[str] = None) -> List[Dict[str, Any]]:
        return [row.to_dict() for row in self.log.samples(self.chain_key(participant, index, category))]
