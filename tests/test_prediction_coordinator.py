import asyncio
import os
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Optional

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.config import BYTE_RATE, PipelineConfig
from pipeline.errors import ConstructionError, DecodeIOError, PredictorError
from pipeline.hotlist_predictor import HotlistPredictor
from pipeline.ml_predictor import MlPredictor
from pipeline.prediction_coordinator import PredictionCoordinator, State
from pipeline.predictor import Predictor
from pipeline.sinks import ListSink
from sources.audio_chunk import ChunkRecord
from sources.audio_source import AudioSource
from sources.decoder_source import AudioChunkSource

PASSTHROUGH = [
    sys.executable,
    "-c",
    "import shutil, sys; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer)",
]


def make_chunks(n: int, metadata_path: str | None = None) -> list[ChunkRecord]:
    return [
        ChunkRecord(data=bytes([i]) * 10, t_start=i * 1000, t_end=(i + 1) * 1000, metadata_path=metadata_path)
        for i in range(n)
    ]


class FakeSource(AudioSource):
    def __init__(self, chunks: list[ChunkRecord], fail_after: int | None = None):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.coordinator: PredictionCoordinator | None = None
        self.pulls = 0
        self.pulled_while_in_flight = False
        self.started = False
        self.stopped = False
        self._finished = False

    async def start(self) -> None:
        self.started = True

    async def next_chunk(self) -> Optional[ChunkRecord]:
        if self.coordinator is not None and self.coordinator.in_flight is not None:
            self.pulled_while_in_flight = True
        if self.fail_after is not None and self.pulls == self.fail_after:
            raise DecodeIOError("decoder went away")
        self.pulls += 1
        await asyncio.sleep(0)
        if not self.chunks:
            self._finished = True
            return None
        return self.chunks.pop(0)

    async def stop(self) -> None:
        self.stopped = True

    @property
    def is_finished(self) -> bool:
        return self._finished


class FakePredictor(Predictor):
    active = 0
    max_active = 0

    def __init__(self, kind: str, sink: ListSink, fail: bool = False, delay: float = 0.01):
        super().__init__(sink)
        self.kind = kind
        self.fail = fail
        self.delay = delay
        self.loaded = False
        self.writes: list[bytes] = []
        self.predict_calls = 0
        self.close_calls = 0
        self.sink_items_at_close: int | None = None
        self.sink_closed_at_close: bool | None = None

    async def load(self) -> None:
        self.loaded = True

    def write(self, data: bytes) -> None:
        self.writes.append(data)

    async def predict(self):
        self.predict_calls += 1
        FakePredictor.active += 1
        FakePredictor.max_active = max(FakePredictor.max_active, FakePredictor.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            FakePredictor.active -= 1
        if self.fail:
            raise PredictorError(f"{self.kind} broke")
        result = {"type": self.kind, "data": {"n": len(self.writes)}}
        self.emit(result)
        return result

    def close(self) -> None:
        self.close_calls += 1
        self.sink_items_at_close = len(self.sink.items)
        self.sink_closed_at_close = self.sink.closed
        super().close()


class TestPredictionCoordinator(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        FakePredictor.active = 0
        FakePredictor.max_active = 0
        self.sink = ListSink()

    def _make(self, chunks, config=None, fail=(), **kwargs):
        source = kwargs.pop("source", None) or FakeSource(chunks)
        predictors = {
            kind: FakePredictor(kind, self.sink, fail=kind in fail)
            for kind in ("ml", "hotlist")
        }
        coordinator = PredictionCoordinator(
            country="France",
            name="RTL",
            sink=self.sink,
            file=kwargs.pop("file", "/radio/show.mp3"),
            config=config,
            source=source,
            predictors=predictors,
            **kwargs,
        )
        if isinstance(source, FakeSource):
            source.coordinator = coordinator
        return coordinator, source, predictors

    async def test_merged_objects_reach_sink_in_order(self) -> None:
        coordinator, source, _ = self._make(make_chunks(3))
        await coordinator.run()

        merged = self.sink.of_type("fileChunk")
        self.assertEqual([m["tStart"] for m in merged], [0, 1000, 2000])
        self.assertEqual([m["tEnd"] for m in merged], [1000, 2000, 3000])
        self.assertTrue(all(m["metadataPath"] == "/radio/show.json" for m in merged))
        self.assertEqual(merged[0]["data"], bytes([0]) * 10)
        self.assertEqual(coordinator.state, State.CLOSED)
        self.assertEqual(coordinator.chunks_processed, 3)
        self.assertTrue(source.stopped)

    async def test_record_metadata_path_gets_json_suffix(self) -> None:
        coordinator, _, _ = self._make(make_chunks(1, metadata_path="/rec/2018-01-01T10"))
        await coordinator.run()
        self.assertEqual(self.sink.of_type("fileChunk")[0]["metadataPath"], "/rec/2018-01-01T10.json")

    async def test_predictors_run_concurrently_on_each_chunk(self) -> None:
        coordinator, _, predictors = self._make(make_chunks(2))
        await coordinator.run()

        self.assertEqual(FakePredictor.max_active, 2)
        for predictor in predictors.values():
            self.assertTrue(predictor.loaded)
            self.assertEqual(predictor.writes, [bytes([0]) * 10, bytes([1]) * 10])
            self.assertEqual(predictor.predict_calls, 2)

        # raw predictor emissions arrive before the merged object of their chunk
        kinds = [obj["type"] for obj in self.sink.items]
        self.assertEqual(kinds.index("fileChunk"), 2)

    async def test_source_is_never_pulled_with_a_chunk_in_flight(self) -> None:
        coordinator, source, _ = self._make(make_chunks(4))
        await coordinator.run()
        self.assertFalse(source.pulled_while_in_flight)
        self.assertEqual(source.pulls, 5)
        self.assertIsNone(coordinator.in_flight)

    async def test_disabled_predictors_are_never_touched(self) -> None:
        config = PipelineConfig(enable_predictor_ml=False, enable_predictor_hotlist=False)
        coordinator, _, predictors = self._make(make_chunks(3), config=config)
        await coordinator.run()

        self.assertEqual(coordinator.predictors, {})
        for predictor in predictors.values():
            self.assertEqual(predictor.writes, [])
            self.assertEqual(predictor.predict_calls, 0)
            self.assertFalse(predictor.loaded)
        self.assertEqual([obj["type"] for obj in self.sink.items], ["fileChunk"] * 3)
        self.assertTrue(self.sink.closed)

    async def test_one_disabled_predictor(self) -> None:
        config = {"enablePredictorMl": False}
        coordinator, _, predictors = self._make(make_chunks(2), config=config)
        await coordinator.run()

        self.assertEqual(predictors["ml"].predict_calls, 0)
        self.assertEqual(predictors["hotlist"].predict_calls, 2)
        self.assertEqual(len(self.sink.of_type("fileChunk")), 2)

    async def test_predictor_error_is_logged_and_absorbed(self) -> None:
        coordinator, _, predictors = self._make(make_chunks(3), fail=("ml",))
        with self.assertLogs(coordinator.log, level="WARNING") as logs:
            await coordinator.run()

        self.assertEqual(len(self.sink.of_type("fileChunk")), 3)
        self.assertEqual(len(self.sink.of_type("hotlist")), 3)
        self.assertEqual(self.sink.of_type("ml"), [])
        self.assertEqual(len(coordinator.predictor_errors), 3)
        self.assertTrue(any("ml broke" in line for line in logs.output))
        self.assertTrue(self.sink.closed)

    async def test_predictors_closed_once_after_last_merge(self) -> None:
        coordinator, _, predictors = self._make(make_chunks(3))
        await coordinator.run()

        for predictor in predictors.values():
            self.assertEqual(predictor.close_calls, 1)
            self.assertTrue(predictor.closed)
            self.assertEqual(predictor.sink_items_at_close, len(self.sink.items))
            self.assertFalse(predictor.sink_closed_at_close)
        self.assertTrue(self.sink.closed)

    async def test_empty_input_still_closes_everything(self) -> None:
        coordinator, _, predictors = self._make([])
        await coordinator.run()

        self.assertEqual(self.sink.items, [])
        self.assertTrue(self.sink.closed)
        self.assertTrue(all(p.close_calls == 1 for p in predictors.values()))

    async def test_decode_error_is_fatal(self) -> None:
        source = FakeSource(make_chunks(5), fail_after=2)
        coordinator, _, predictors = self._make([], source=source)
        with self.assertLogs(coordinator.log, level="ERROR"):
            with self.assertRaises(DecodeIOError):
                await coordinator.run()

        self.assertEqual(len(self.sink.of_type("fileChunk")), 2)
        self.assertFalse(self.sink.closed)
        self.assertTrue(source.stopped)
        self.assertTrue(all(p.close_calls == 1 for p in predictors.values()))
        self.assertEqual(coordinator.state, State.CLOSED)

    async def test_sink_error_propagates(self) -> None:
        class BrokenSink(ListSink):
            def write(self, obj):
                if obj.get("type") == "fileChunk":
                    raise OSError("disk full")
                super().write(obj)

        self.sink = BrokenSink()
        coordinator, _, _ = self._make(make_chunks(2))
        with self.assertLogs(coordinator.log, level="ERROR"):
            with self.assertRaises(OSError):
                await coordinator.run()

    async def test_sink_error_with_live_decoder_and_slow_predictors(self) -> None:
        class BrokenSink(ListSink):
            def write(self, obj):
                if obj.get("type") == "fileChunk":
                    raise OSError("disk full")
                super().write(obj)

        self.sink = BrokenSink()
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "show.raw")
            with open(path, "wb") as f:
                f.write(b"\x01\x00" * (30 * BYTE_RATE // 2))

            source = AudioChunkSource(file=path, config=PipelineConfig(), decoder_cmd=PASSTHROUGH)
            predictors = {
                kind: FakePredictor(kind, self.sink, delay=0.5)
                for kind in ("ml", "hotlist")
            }
            coordinator = PredictionCoordinator(
                country="France",
                name="RTL",
                sink=self.sink,
                file=path,
                source=source,
                predictors=predictors,
            )
            with self.assertLogs(coordinator.log, level="ERROR"):
                with self.assertRaises(OSError) as ctx:
                    await asyncio.wait_for(coordinator.run(), 5)

        self.assertNotIsInstance(ctx.exception, TimeoutError)
        self.assertEqual(str(ctx.exception), "disk full")
        self.assertEqual(coordinator.state, State.CLOSED)
        self.assertTrue(source.is_finished)
        self.assertFalse(self.sink.closed)
        self.assertTrue(all(p.close_calls == 1 for p in predictors.values()))

    async def test_cannot_run_twice(self) -> None:
        coordinator, _, _ = self._make(make_chunks(1))
        await coordinator.run()
        with self.assertRaises(RuntimeError):
            await coordinator.run()

    async def test_end_to_end_with_decoder_and_no_predictors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "show.raw")
            with open(path, "wb") as f:
                f.write(b"\x01\x00" * int(5.5 * BYTE_RATE / 2))

            config = PipelineConfig(enable_predictor_ml=False, enable_predictor_hotlist=False)
            source = AudioChunkSource(file=path, config=config, decoder_cmd=PASSTHROUGH)
            coordinator = PredictionCoordinator(
                country="France",
                name="RTL",
                sink=self.sink,
                file=path,
                config=config,
                source=source,
            )
            await coordinator.run()

        merged = self.sink.items
        self.assertEqual([m["type"] for m in merged], ["fileChunk"] * 6)
        self.assertEqual([m["tStart"] for m in merged], [0, 1000, 2000, 3000, 4000, 5000])
        self.assertEqual(merged[-1]["tEnd"], 5500)
        self.assertEqual(merged[0]["metadataPath"], os.path.join(tmp, "show.json"))
        self.assertTrue(self.sink.closed)


class TestPredictionCoordinatorConstruction(unittest.TestCase):
    def test_missing_identification_fails(self) -> None:
        with self.assertLogs("pipeline.prediction_coordinator", level="ERROR"):
            with self.assertRaises(ConstructionError):
                PredictionCoordinator(country="", name="RTL", sink=ListSink(), file="a.mp3")
        with self.assertRaises(ConstructionError):
            PredictionCoordinator(country="France", name="RTL", sink=None, file="a.mp3")  # type: ignore[arg-type]

    def test_input_must_be_given_once(self) -> None:
        with self.assertRaises(ConstructionError):
            PredictionCoordinator(country="France", name="RTL", sink=ListSink())
        with self.assertRaises(ConstructionError):
            PredictionCoordinator(country="France", name="RTL", sink=ListSink(), file="a.mp3", records=["b.mp3"])

    def test_unknown_config_option_fails(self) -> None:
        with self.assertRaises(ConstructionError):
            PredictionCoordinator(
                country="France", name="RTL", sink=ListSink(), file="a.mp3",
                config={"predIntervall": 2},
            )

    def test_model_path_needed_for_enabled_predictors(self) -> None:
        with self.assertRaises(ConstructionError):
            PredictionCoordinator(country="France", name="RTL", sink=ListSink(), file="a.mp3")

    def test_predictor_files_resolve_from_model_path(self) -> None:
        sink = ListSink()
        coordinator = PredictionCoordinator(
            country="France",
            name="RTL",
            sink=sink,
            model_path="/models",
            records=["/rec/a.mp3", "/rec/b.mp3"],
            source=FakeSource([]),
        )

        ml = coordinator.predictors["ml"]
        hotlist = coordinator.predictors["hotlist"]
        self.assertIsInstance(ml, MlPredictor)
        self.assertIsInstance(hotlist, HotlistPredictor)
        assert isinstance(ml, MlPredictor) and isinstance(hotlist, HotlistPredictor)
        self.assertEqual(ml.model_file, os.path.join("/models", "France_RTL.pt"))
        self.assertEqual(hotlist.db_file, os.path.join("/models", "France_RTL.sqlite"))
        self.assertIs(ml.sink, sink)

    def test_builds_decoder_source_by_default(self) -> None:
        config = PipelineConfig(pred_interval=2, enable_predictor_ml=False, enable_predictor_hotlist=False)
        coordinator = PredictionCoordinator(
            country="France", name="RTL", sink=ListSink(), file="a.mp3", config=config,
        )
        self.assertIsInstance(coordinator.source, AudioChunkSource)
        assert isinstance(coordinator.source, AudioChunkSource)
        self.assertEqual(coordinator.source.window_size, 2 * BYTE_RATE)
        self.assertEqual(coordinator.state, State.IDLE)


if __name__ == "__main__":
    unittest.main()
