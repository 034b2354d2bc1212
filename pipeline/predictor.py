import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from pipeline.logging_utils import get_logger
from pipeline.sinks import Sink


class Predictor(ABC):
    """
    A unit that consumes chunk audio and asynchronously produces a result.

    Results also go straight to the sink through emit(), independently of
    the coordinator's merged per-chunk object.
    """

    kind: str = "predictor"

    def __init__(self, sink: Sink, logger: logging.Logger | None = None):
        self.sink = sink
        self.log = logger or get_logger(__name__)
        self._closed = False

    async def load(self) -> None:
        """Load models or open databases. Called once before the first chunk."""
        pass

    @abstractmethod
    def write(self, data: bytes) -> None:
        pass

    @abstractmethod
    async def predict(self) -> Optional[dict[str, Any]]:
        """Run on everything written since the last call."""
        pass

    def emit(self, obj: dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError(f"{self.kind} predictor is closed")
        self.sink.write(obj)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()

    def _release(self) -> None:
        pass

    @property
    def closed(self) -> bool:
        return self._closed
