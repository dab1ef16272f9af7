# -*- coding: utf-8 -*-
"""
Stimulus rendering: latent vector -> image, via a remote generator service.

  POST {url}/generate        {"vector": [...]}          -> {"image": b64, "pred_label": str}
  POST {url}/generate_batch  {"vector": [[...], ...]}   -> {"images": [b64, ...]}

Failures never reach the participant: after `retries` attempts with a fixed
delay the renderer substitutes a grey-noise PNG and, for single renders, a
uniformly random category label.
"""

from __future__ import annotations

import base64
import io
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar

import numpy as np
import requests
from PIL import Image

from .errors import RenderingServiceError
from .proposals import random_choice

logger = logging.getLogger(__name__)

R = TypeVar("R")

PNG_PREFIX = "data:image/png;base64,"


@dataclass
class Rendered:
    image: object                 # data URL, or the raw vector in raw mode
    label: Optional[str] = None   # renderer's predicted category


def noise_image(rng: np.random.Generator, width: int = 64, height: int = 64) -> str:
    pixels = rng.integers(0, 256, size=(height, width), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels).convert("RGB").save(buf, format="PNG")
    return PNG_PREFIX + base64.b64encode(buf.getvalue()).decode("ascii")


def retry(fn: Callable[[], R], attempts: int, delay: float, what: str) -> R:
    """Call fn until it succeeds or `attempts` RenderingServiceErrors have been raised."""
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except RenderingServiceError as exc:
            logger.warning("attempt %d/%d failed for %s: %s", attempt, attempts, what, exc)
            if attempt == attempts:
                raise
            time.sleep(delay)
    raise RenderingServiceError(f"{what}: no attempts made")


class RawRenderer:
    """Echoes vectors back; used for local runs without a generator service."""

    def __init__(self, classes: Sequence[str], rng: np.random.Generator):
        self.classes = list(classes)
        self.rng = rng

    def render(self, vector: Sequence[float]) -> Rendered:
        return Rendered(image=[float(v) for v in vector], label=None)

    def render_batch(self, vectors: Sequence[Sequence[float]]) -> List[object]:
        return [[float(v) for v in vec] for vec in vectors]


class RemoteRenderer:
    def __init__(
        self,
        url: str,
        classes: Sequence[str],
        rng: np.random.Generator,
        timeout: float = 10.0,
        retries: int = 3,
        retry_delay: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.classes = list(classes)
        self.rng = rng
        self.timeout = float(timeout)
        self.retries = int(retries)
        self.retry_delay = float(retry_delay)
        self.session = session or requests.Session()

    def _post(self, path: str, vector) -> dict:
        try:
            resp = self.session.post(
                self.url + path,
                json={"vector": vector},
                headers={"accept": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise RenderingServiceError(f"{path}: {exc}") from exc

    def _generate(self, vector: List[float]) -> Rendered:
        data = self._post("/generate", vector)
        if not isinstance(data, dict) or not data.get("image"):
            raise RenderingServiceError(f"/generate returned no image: {str(data)[:200]}")
        label = data.get("pred_label")
        return Rendered(image=PNG_PREFIX + data["image"], label=label if label in self.classes else None)

    def _generate_batch(self, vectors: List[List[float]]) -> List[str]:
        data = self._post("/generate_batch", vectors)
        images = data.get("images") if isinstance(data, dict) else None
        if not images or len(images) != len(vectors) or not all(images):
            raise RenderingServiceError(f"/generate_batch returned a malformed payload: {str(data)[:200]}")
        return [PNG_PREFIX + img for img in images]

    def render(self, vector: Sequence[float]) -> Rendered:
        vec = [float(v) for v in vector]
        try:
            return retry(lambda: self._generate(vec), self.retries, self.retry_delay, "generate")
        except RenderingServiceError:
            logger.error("all %d render attempts failed; substituting noise", self.retries)
            return Rendered(image=noise_image(self.rng), label=random_choice(self.classes, self.rng))

    def render_batch(self, vectors: Sequence[Sequence[float]]) -> List[object]:
        vecs = [[float(v) for v in vec] for vec in vectors]
        try:
            return retry(lambda: self._generate_batch(vecs), self.retries, self.retry_delay, "generate_batch")
        except RenderingServiceError:
            logger.error("all %d batch render attempts failed; substituting noise", self.retries)
            return [noise_image(self.rng) for _ in vecs]


def make_renderer(config, rng: np.random.Generator):
    if not config.image_url:
        return RawRenderer(config.classes, rng)
    return RemoteRenderer(
        config.image_url,
        config.classes,
        rng,
        timeout=config.render_timeout,
        retries=config.render_retries,
        retry_delay=config.render_retry_delay,
    )
