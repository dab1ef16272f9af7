# -*- coding: utf-8 -*-
"""
Experiment configuration: one dataclass, loaded from YAML.

  state space   : dim coordinates, coordinate i in ranges[i] (default [lower_bound, upper_bound])
  random walk   : x' = wrap(x + N(0, proposal_bandwidth * I))
  gatekeeper    : acceptance at `temperature`, forced class switch after `stuck_patience`
  gsp           : max_samples_per_class * dim slice trials per chain
  gsp_prior     : max_samples_per_class * (dim + 1) trials per chain

Usage:
  cfg = load_config("experiment.yaml", seed=1234)

Unknown keys are rejected so a typo never silently falls back to a default.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import yaml

VARIANTS = ("independent", "blockwise", "gsp", "gsp_prior")

DEFAULT_CLASSES = ["happy", "sad", "surprise", "angry", "neutral", "disgust", "fear"]
DEFAULT_QUESTIONS = [
    "who looks happier?",
    "who looks sadder?",
    "who looks more surprised?",
    "who looks angrier?",
    "who looks more neutral?",
    "who looks more disgusted?",
    "who looks more fearful?",
]


@dataclass
class ExperimentConfig:
    task: str = field(default="blockwise")
    variant: str = field(default="blockwise")
    classes: List[str] = field(default_factory=lambda: list(DEFAULT_CLASSES))
    class_questions: List[str] = field(default_factory=lambda: list(DEFAULT_QUESTIONS))

    # state space
    dim: int = field(default=16)
    lower_bound: float = field(default=-10.0)
    upper_bound: float = field(default=10.0)
    # per-dimension [min, max]; falls back to (lower_bound, upper_bound)
    ranges: Optional[List[List[float]]] = field(default=None)
    # diagonal of the random-walk proposal covariance
    proposal_bandwidth: float = field(default=0.1)

    # chains and trials
    n_chain: int = field(default=7)
    max_trial: int = field(default=10)
    n_rest: int = field(default=200)

    # gatekeeper
    gatekeeper: bool = field(default=False)
    gatekeeper_dir: Optional[str] = field(default="gatekeepers")
    # None keeps the bandwidth stored in each model file
    gatekeeper_bandwidth: Optional[float] = field(default=None)
    temperature: float = field(default=2.0)
    stuck_patience: int = field(default=1000)
    min_proposal_distance: float = field(default=2.0)
    gatekeeper_screen_rate: float = field(default=0.0)
    max_auto_steps: int = field(default=50)

    # attention checks
    attention_check: bool = field(default=False)
    attention_check_dir: Optional[str] = field(default="stimuli/attention_check")
    attention_check_rate: float = field(default=0.005)
    max_attention_failures: int = field(default=2)

    # GSP
    resolution: int = field(default=10)
    max_samples_per_class: int = field(default=2)

    # consensus
    consensus_n: int = field(default=3)
    poll_interval: float = field(default=2.0)

    # stimulus renderer; None renders raw vectors
    image_url: Optional[str] = field(default=None)
    render_timeout: float = field(default=10.0)
    render_retries: int = field(default=3)
    render_retry_delay: float = field(default=0.5)

    seed: Optional[int] = field(default=None)

    @property
    def bounds(self) -> Tuple[float, float]:
        return (float(self.lower_bound), float(self.upper_bound))

    def range_array(self) -> np.ndarray:
        """(dim, 2) array of per-dimension [min, max]."""
        if self.ranges is None:
            return np.tile(np.array(self.bounds, dtype=float), (self.dim, 1))
        return np.asarray(self.ranges, dtype=float)

    def question_for(self, category: str) -> str:
        i = self.classes.index(category)
        if i < len(self.class_questions):
            return self.class_questions[i]
        return f"Adjust the slider to match the following word as well as possible: {category}"

    def validate(self) -> "ExperimentConfig":
        if self.variant not in VARIANTS:
            raise ValueError(f"variant must be one of {VARIANTS}, got {self.variant!r}")
        if len(self.classes) < 2 and self.variant in ("blockwise", "gsp_prior"):
            raise ValueError("category sampling needs at least two classes")
        if len(set(self.classes)) != len(self.classes):
            raise ValueError("classes must be unique")
        if self.dim < 1:
            raise ValueError("dim must be >= 1")
        if not self.lower_bound < self.upper_bound:
            raise ValueError("lower_bound must be < upper_bound")
        if self.ranges is not None:
            arr = np.asarray(self.ranges, dtype=float)
            if arr.shape != (self.dim, 2) or np.any(arr[:, 1] <= arr[:, 0]):
                raise ValueError("ranges must be dim pairs of [min, max] with min < max")
        if self.proposal_bandwidth <= 0 or self.temperature <= 0:
            raise ValueError("proposal_bandwidth and temperature must be positive")
        for name in ("attention_check_rate", "gatekeeper_screen_rate"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be in [0,1]")
        if self.n_chain < 1 or self.max_trial < 1 or self.max_auto_steps < 1:
            raise ValueError("n_chain, max_trial and max_auto_steps must be >= 1")
        if self.resolution < 2:
            raise ValueError("resolution must be >= 2")
        if self.consensus_n < 1:
            raise ValueError("consensus_n must be >= 1")
        if self.render_retries < 1:
            raise ValueError("render_retries must be >= 1")
        return self


def _from_dict(data: Dict[str, Any]) -> ExperimentConfig:
    known = {f.name for f in fields(ExperimentConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"unknown config keys: {', '.join(unknown)}")
    return ExperimentConfig(**data).validate()


def load_config(path: Path | str | None = None, **overrides: Any) -> ExperimentConfig:
    data: Dict[str, Any] = {}
    if path is not None:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"config root must be a mapping: {path}")
        data.update(raw)
    data.update(overrides)
    return _from_dict(data)
