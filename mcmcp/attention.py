# -*- coding: utf-8 -*-
"""
Attention checks: pre-authored stimulus pairs with known answers.

Layout on disk, one directory per pair, named after the two categories it
discriminates:

  stimuli/attention_check/
      happy_sad/    happy.png  sad.png
      angry_fear/   angry.png  fear.png

A pair is eligible for a chain whose current class appears in its name.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from .chainlog import ParticipantLedger

logger = logging.getLogger(__name__)

FAIL_COLUMN = "attention_check_fail"


@dataclass(frozen=True)
class AttentionPair:
    first: Path
    second: Path
    labels: Tuple[str, str]


def grab_image(path: Path) -> str:
    data = Path(path).read_bytes()
    suffix = Path(path).suffix.lstrip(".").lower() or "png"
    return f"data:image/{suffix};base64," + base64.b64encode(data).decode("ascii")


class AttentionCheckBank:
    def __init__(self, directory, ledger: ParticipantLedger, max_failures: int = 2):
        self.directory = Path(directory)
        self.ledger = ledger
        self.max_failures = int(max_failures)
        self._pairs = self._scan()

    def _scan(self) -> List[AttentionPair]:
        pairs: List[AttentionPair] = []
        if not self.directory.is_dir():
            raise FileNotFoundError(f"attention check directory not found: {self.directory}")
        for sub in sorted(p for p in self.directory.iterdir() if p.is_dir()):
            parts = sub.name.split("_")
            if len(parts) < 2:
                continue
            s1, s2 = parts[0], parts[1]
            files: Dict[str, Path] = {f.stem: f for f in sub.iterdir() if f.is_file()}
            if s1 in files and s2 in files:
                pairs.append(AttentionPair(first=files[s1], second=files[s2], labels=(s1, s2)))
            else:
                logger.warning("attention pair %s lacks %s/%s images, skipped", sub.name, s1, s2)
        return pairs

    def pairs_for(self, category: Optional[str]) -> List[AttentionPair]:
        if category is None:
            return list(self._pairs)
        return [p for p in self._pairs if category in p.labels]

    def draw(self, category: Optional[str], rng: np.random.Generator) -> Dict:
        candidates = self.pairs_for(category)
        if not candidates:
            raise LookupError(f"no attention check pair found for class: {category}")
        pair = candidates[int(rng.integers(0, len(candidates)))]
        return {
            "trial_type": "attention_check",
            "current_class": category,
            "current": grab_image(pair.first),
            "proposal": grab_image(pair.second),
            "attention_check": list(pair.labels),
        }

    def register(self, participant: str, passed: bool) -> Dict:
        if passed:
            fail_count = self.ledger.get(participant, FAIL_COLUMN)
        else:
            fail_count = self.ledger.increment(participant, FAIL_COLUMN)
        logger.info("%s attention check success: %s (failures=%d)", participant, passed, fail_count)
        return {
            "status": "success",
            "fail_count": fail_count,
            "terminate": fail_count >= self.max_failures,
        }
