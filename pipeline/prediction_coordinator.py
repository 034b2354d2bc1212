import asyncio
import enum
import json
import logging
import os
from typing import Any, Mapping, Optional, Sequence

from pipeline.config import (
    CHUNK_TYPE,
    HOTLIST_DB_EXT,
    METADATA_SUFFIX,
    ML_MODEL_EXT,
    PipelineConfig,
    model_file,
)
from pipeline.errors import ConstructionError
from pipeline.logging_utils import get_logger
from pipeline.predictor import Predictor
from pipeline.sinks import Sink
from sources.audio_chunk import ChunkRecord
from sources.audio_source import AudioSource
from sources.decoder_source import AudioChunkSource


class State(enum.Enum):
    IDLE = "idle"
    AWAITING_CHUNK = "awaiting_chunk"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    CLOSING = "closing"
    CLOSED = "closed"


class PredictionCoordinator:
    """
    Runs one file (or one ordered list of records) through the enabled
    predictors, one chunk at a time, and writes a merged object per chunk
    to the sink.
    """

    def __init__(
        self,
        country: str,
        name: str,
        sink: Sink,
        model_path: str | None = None,
        file: str | None = None,
        records: Sequence[str] | None = None,
        config: PipelineConfig | Mapping[str, Any] | None = None,
        source: AudioSource | None = None,
        predictors: Mapping[str, Predictor] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.log = logger or get_logger(__name__)

        # stream identification
        self.country = country
        self.name = name
        self.model_path = model_path  # directory where ML models and hotlist DBs are stored

        # input file(s), specify one
        self.file = file
        self.records = list(records) if records is not None else None

        self.sink = sink

        if not country or not name or sink is None or (not file and not records):
            self._fail(
                "Predictor needs to be constructed with: country (string), name (string), "
                "sink and (file (string) OR records (list of strings))"
            )
        if file and records:
            self._fail("Predictor takes either file or records, not both")

        try:
            self.config = config if isinstance(config, PipelineConfig) else PipelineConfig.from_options(config)
        except ValueError as exc:
            self._fail(f"Invalid config: {exc}")

        if self.file:
            self.log.info("run predictor on file %s with config=%s", self.file, json.dumps(self.config.to_options()))
        else:
            self.log.info(
                "run predictor on %d records with config=%s",
                len(self.records or []),
                json.dumps(self.config.to_options()),
            )

        self.predictors = self._build_predictors(predictors or {})
        self.source = source or AudioChunkSource(
            file=self.file,
            records=self.records,
            config=self.config,
            logger=self.log.getChild("source"),
        )

        self.state = State.IDLE
        self.in_flight: ChunkRecord | None = None
        self.chunks_processed = 0
        self.predictor_errors: list[tuple[str, BaseException]] = []

    def _fail(self, message: str) -> None:
        self.log.error(message)
        raise ConstructionError(message)

    # --------------------
    # Predictors
    # --------------------

    def _build_predictors(self, injected: Mapping[str, Predictor]) -> dict[str, Predictor]:
        enabled = {
            "hotlist": self.config.enable_predictor_hotlist,
            "ml": self.config.enable_predictor_ml,
        }
        out: dict[str, Predictor] = {}
        for kind, on in enabled.items():
            if not on:
                continue
            if kind in injected:
                out[kind] = injected[kind]
                continue
            if not self.model_path:
                self._fail(f"model_path is required to build the {kind} predictor")
            out[kind] = self._make_predictor(kind)
        return out

    def _make_predictor(self, kind: str) -> Predictor:
        assert self.model_path is not None
        if kind == "hotlist":
            from pipeline.hotlist_predictor import HotlistPredictor
            return HotlistPredictor(
                db_file=model_file(self.model_path, self.country, self.name, HOTLIST_DB_EXT),
                sink=self.sink,
                logger=self.log.getChild("hotlist"),
            )

        from pipeline.ml_predictor import MlPredictor
        return MlPredictor(
            model_file=model_file(self.model_path, self.country, self.name, ML_MODEL_EXT),
            sink=self.sink,
            logger=self.log.getChild("ml"),
        )

    async def _load_predictors(self) -> None:
        kinds = list(self.predictors)
        results = await asyncio.gather(
            *(self.predictors[k].load() for k in kinds),
            return_exceptions=True,
        )
        for kind, result in zip(kinds, results):
            if isinstance(result, BaseException):
                self.log.error("could not load %s predictor: %s", kind, result)

    # --------------------
    # Main loop
    # --------------------

    async def run(self) -> None:
        if self.state is not State.IDLE:
            raise RuntimeError(f"coordinator cannot run from state {self.state.value}")

        try:
            await self.source.start()
            await self._load_predictors()

            while True:
                self.state = State.AWAITING_CHUNK
                chunk = await self.source.next_chunk()
                if chunk is None:
                    break
                await self._on_chunk(chunk)
        except Exception:
            self.log.exception("pipeline run failed")
            await self._abort()
            raise

        self.log.info("all data has been read")
        await self._shutdown()

    async def _on_chunk(self, chunk: ChunkRecord) -> None:
        if self.in_flight is not None:
            raise RuntimeError("a chunk is already in flight")
        self.in_flight = chunk

        self.state = State.DISPATCHING
        kinds = list(self.predictors)
        results = await asyncio.gather(
            *(self._run_predictor(self.predictors[k], chunk.data) for k in kinds),
            return_exceptions=True,
        )

        self.state = State.MERGING
        errors = [(k, r) for k, r in zip(kinds, results) if isinstance(r, BaseException)]
        for kind, err in errors:
            self.log.warning("a predictor returned the following error: %s: %s", kind, err)
        self.predictor_errors.extend(errors)

        self.sink.write(self.merge(chunk))
        self.chunks_processed += 1
        self.in_flight = None

    async def _run_predictor(self, predictor: Predictor, data: bytes) -> Optional[dict[str, Any]]:
        predictor.write(data)
        return await predictor.predict()

    def merge(self, chunk: ChunkRecord) -> dict[str, Any]:
        obj = chunk.to_dict()
        obj["type"] = CHUNK_TYPE
        obj["metadataPath"] = (chunk.metadata_path or self._file_metadata_base()) + METADATA_SUFFIX
        return obj

    def _file_metadata_base(self) -> str:
        return os.path.splitext(self.file or "")[0]

    # --------------------
    # Shutdown
    # --------------------

    async def _shutdown(self) -> None:
        self.state = State.CLOSING
        self._close_predictors()
        await self.source.stop()
        self.sink.close()
        self.state = State.CLOSED

    async def _abort(self) -> None:
        self.state = State.CLOSING
        await self.source.stop()
        self._close_predictors()
        self.in_flight = None
        self.state = State.CLOSED

    def _close_predictors(self) -> None:
        self.log.info("close predictor")
        for predictor in self.predictors.values():
            predictor.close()
