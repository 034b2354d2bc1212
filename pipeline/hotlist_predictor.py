import asyncio
import logging
import os
from typing import Any, Optional

from pipeline.config import SAMPLE_RATE
from pipeline.errors import PredictorError
from pipeline.predictor import Predictor
from pipeline.sinks import Sink
from search.alignment_service import AlignmentConfig, AlignmentService
from search.fingerprinter import Fingerprinter
from sources.audio_chunk import pcm16_to_float32
from storage.fingerprint_store import FingerprintStore


class HotlistPredictor(Predictor):
    """Looks up the fingerprints of each chunk in a database of known tracks."""

    kind = "hotlist"

    def __init__(
        self,
        db_file: str,
        sink: Sink,
        fingerprinter: Fingerprinter | None = None,
        alignment: AlignmentService | None = None,
        logger: logging.Logger | None = None,
    ):
        super().__init__(sink, logger)
        self.db_file = db_file
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.alignment = alignment or AlignmentService(AlignmentConfig())
        self.store: FingerprintStore | None = None
        self._buffer = bytearray()

    async def load(self) -> None:
        if not os.path.exists(self.db_file):
            raise PredictorError(f"Hotlist database not found: {self.db_file}")

        store = FingerprintStore(db_path=self.db_file)
        n_tracks = await asyncio.to_thread(store.count_tracks)
        self.store = store
        self.log.info("hotlist %s holds %d tracks", self.db_file, n_tracks)

    def write(self, data: bytes) -> None:
        self._buffer.extend(data)

    async def predict(self) -> Optional[dict[str, Any]]:
        if self.store is None:
            raise PredictorError("Hotlist database is not loaded")

        data = bytes(self._buffer)
        self._buffer.clear()
        result = await asyncio.to_thread(self._search, data)
        self.emit(result)
        return result

    def _search(self, data: bytes) -> dict[str, Any]:
        assert self.store is not None
        hashes, times = self.fingerprinter.fingerprint(pcm16_to_float32(data))
        rows = self.store.lookup(hashes.tolist())
        aligned = self.alignment.align(hashes, times, rows)

        out: dict[str, Any] = {
            "file": None,
            "class": None,
            "matches": aligned.matches,
            "total": aligned.total,
            "offsetSeconds": None,
        }

        if aligned.found and aligned.track_id is not None:
            track = self.store.get_track(aligned.track_id)
            if track is not None:
                _, out["file"], out["class"] = track
                out["offsetSeconds"] = self.fingerprinter.frames_to_seconds(
                    aligned.offset_frames or 0, SAMPLE_RATE
                )
        else:
            self.log.debug("hotlist: %s", aligned.reason)

        return {"type": self.kind, "data": out}

    def _release(self) -> None:
        self._buffer.clear()
        self.store = None
