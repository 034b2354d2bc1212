import asyncio
import logging
import os
from typing import Any, Optional, Protocol

import numpy as np
import torch
from torch import nn

from pipeline.config import BYTE_RATE, SAMPLE_RATE
from pipeline.errors import PredictorError
from pipeline.predictor import Predictor
from pipeline.sinks import Sink
from sources.audio_chunk import pcm16_to_float32


class SampleEmbedder(Protocol):
    def embed_samples(self, samples: np.ndarray, sample_rate: int) -> np.ndarray: ...


class MlPredictor(Predictor):
    """
    Classifies the most recent audio with a per-stream linear head on top of
    AST embeddings.

    The model file is a torch checkpoint:
        {"classes": [str, ...], "state_dict": nn.Linear state dict}
    """

    kind = "ml"

    def __init__(
        self,
        model_file: str,
        sink: Sink,
        embedder: SampleEmbedder | None = None,
        context_seconds: float = 2.0,
        logger: logging.Logger | None = None,
    ):
        super().__init__(sink, logger)
        self.model_file = model_file
        self.embedder = embedder
        self.classes: list[str] = []
        self.head: nn.Linear | None = None

        # whole samples only
        self._max_bytes = int(round(context_seconds * BYTE_RATE)) // 2 * 2
        self._buffer = bytearray()

    async def load(self) -> None:
        await asyncio.to_thread(self._load_sync)

    def _load_sync(self) -> None:
        if not os.path.exists(self.model_file):
            raise PredictorError(f"ML model not found: {self.model_file}")

        checkpoint = torch.load(self.model_file, map_location="cpu")
        state = checkpoint["state_dict"]
        classes = [str(c) for c in checkpoint["classes"]]

        out_features, in_features = state["weight"].shape
        if out_features != len(classes):
            raise PredictorError(
                f"ML model has {out_features} outputs but {len(classes)} class names"
            )

        head = nn.Linear(in_features, out_features)
        head.load_state_dict(state)
        head.eval()

        if self.embedder is None:
            from pipeline.embedder import Embedder
            self.embedder = Embedder(logger=self.log)

        self.classes = classes
        self.head = head
        self.log.info("loaded ML model %s with classes %s", self.model_file, classes)

    def write(self, data: bytes) -> None:
        self._buffer.extend(data)
        if len(self._buffer) > self._max_bytes:
            del self._buffer[: len(self._buffer) - self._max_bytes]

    async def predict(self) -> Optional[dict[str, Any]]:
        if self.head is None:
            raise PredictorError("ML model is not loaded")
        if not self._buffer:
            return None

        result = await asyncio.to_thread(self._infer, bytes(self._buffer))
        self.emit(result)
        return result

    def _infer(self, data: bytes) -> dict[str, Any]:
        assert self.head is not None and self.embedder is not None
        samples = pcm16_to_float32(data)
        embedding = self.embedder.embed_samples(samples, SAMPLE_RATE)

        with torch.no_grad():
            logits = self.head(torch.as_tensor(embedding, dtype=torch.float32).unsqueeze(0))
            probs = torch.softmax(logits, dim=-1)[0].numpy()

        best = int(np.argmax(probs))
        return {
            "type": self.kind,
            "data": {
                "class": self.classes[best],
                "softmaxraw": [float(p) for p in probs],
                "confidence": float(probs[best]),
            },
        }

    def _release(self) -> None:
        self._buffer.clear()
        self.head = None
