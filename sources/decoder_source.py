import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from pipeline.config import BYTE_RATE, FFMPEG_BINARY, SAMPLE_RATE, PipelineConfig
from pipeline.errors import DecodeIOError
from pipeline.logging_utils import get_logger
from sources.audio_chunk import ChunkRecord, bytes_to_ms
from sources.audio_source import AudioSource

_END = object()


def decoder_command(binary: str = FFMPEG_BINARY, sample_rate: int = SAMPLE_RATE) -> list[str]:
    return [
        binary,
        "-i", "pipe:0",
        "-acodec", "pcm_s16le",
        "-ar", str(sample_rate),
        "-ac", "1",
        "-f", "s16le",
        "-v", "fatal",
        "pipe:1",
    ]


class AudioChunkSource(AudioSource):
    """
    Feeds a file (or an ordered list of record files) through the decoder
    and re-emits its PCM output as fixed-duration ChunkRecords.

    The reader reads a window only when the consumer asks for one, so
    nothing past the chunk in hand has been read from the decoder.
    """

    def __init__(
        self,
        file: str | None = None,
        records: Sequence[str] | None = None,
        config: PipelineConfig | None = None,
        decoder_cmd: Sequence[str] | None = None,
        byte_rate: int = BYTE_RATE,
        read_block_size: int = 64 * 1024,
        logger: logging.Logger | None = None,
    ):
        if (file is None) == (records is None):
            raise ValueError("Specify exactly one of file or records")

        self.file = file
        self.records = list(records) if records is not None else None
        self.config = config or PipelineConfig()
        self.decoder_cmd = list(decoder_cmd) if decoder_cmd else decoder_command()
        self.byte_rate = byte_rate
        self.read_block_size = read_block_size
        self.log = logger or get_logger(__name__)

        self.window_size = self.config.window_size(byte_rate)
        self.bytes_read = 0

        self._proc: asyncio.subprocess.Process | None = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._demand = asyncio.Event()
        self._feeder: asyncio.Task | None = None
        self._reader: asyncio.Task | None = None
        self._feed_error: BaseException | None = None
        self._finished = False
        self.records_fed = 0

    # --------------------
    # Lifecycle
    # --------------------

    async def start(self) -> None:
        if self._proc is not None:
            raise RuntimeError("source already started")

        self.log.debug("readAmount=%d bytes", self.window_size)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.decoder_cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
            )
        except OSError as exc:
            raise DecodeIOError(f"Failed to start decoder {self.decoder_cmd[0]}: {exc}") from exc

        self._feeder = asyncio.create_task(self._feed())
        self._reader = asyncio.create_task(self._read())

    async def next_chunk(self) -> Optional[ChunkRecord]:
        if self._finished:
            return None
        if self._reader is None:
            raise RuntimeError("source not started")

        # the reader only reads a window once it is asked for one
        self._demand.set()
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            return None
        if isinstance(item, BaseException):
            self._finished = True
            raise item
        return item

    async def stop(self) -> None:
        self._finished = True

        # kill first: a decoder blocked on a full stdout never lets stdin close
        if self._proc is not None and self._proc.returncode is None:
            self._proc.kill()

        for task in (self._feeder, self._reader):
            if task is not None and not task.done():
                task.cancel()
        tasks = [t for t in (self._feeder, self._reader) if t is not None]
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._proc is not None:
            await self._proc.wait()

    @property
    def is_finished(self) -> bool:
        return self._finished

    # --------------------
    # Decoder input
    # --------------------

    async def _feed(self) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        stdin = self._proc.stdin
        try:
            if self.file is not None:
                fh = await asyncio.to_thread(open, self.file, "rb")
                try:
                    while True:
                        block = await asyncio.to_thread(fh.read, self.read_block_size)
                        if not block:
                            break
                        stdin.write(block)
                        await stdin.drain()
                finally:
                    fh.close()
            else:
                for path in self.records or []:
                    stdin.write(await asyncio.to_thread(Path(path).read_bytes))
                    # suspends while the decoder's input pipe is saturated
                    await stdin.drain()
                    self.records_fed += 1
        except OSError as exc:
            self._feed_error = exc
        except asyncio.CancelledError:
            stdin.transport.abort()
            raise

        stdin.close()
        try:
            await stdin.wait_closed()
        except OSError:
            # decoder already gone; reported through its exit status
            pass

    # --------------------
    # Decoder output
    # --------------------

    async def _read(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        try:
            while True:
                await self._demand.wait()
                self._demand.clear()

                last = False
                try:
                    data = await stdout.readexactly(self.window_size)
                except asyncio.IncompleteReadError as exc:
                    data = exc.partial
                    last = True

                if data:
                    await self._queue.put(self._make_chunk(data))
                if last:
                    break

            returncode = await self._proc.wait()
            if self._feeder is not None:
                await self._feeder

            if returncode != 0:
                raise DecodeIOError(f"Decoder exited with status {returncode}")
            if self._feed_error is not None:
                raise DecodeIOError(f"Failed to feed decoder: {self._feed_error}") from self._feed_error

            self.log.info("decoding finished")
            await self._queue.put(_END)
        except DecodeIOError as exc:
            self.log.error("read err=%s", exc)
            await self._queue.put(exc)
        except Exception as exc:
            self.log.error("read err=%s", exc)
            error = DecodeIOError(f"Failed to read decoder output: {exc}")
            error.__cause__ = exc
            await self._queue.put(error)

    def _make_chunk(self, data: bytes) -> ChunkRecord:
        self.bytes_read += len(data)
        chunk = ChunkRecord(
            data=data,
            t_start=bytes_to_ms(self.bytes_read - len(data), self.byte_rate),
            t_end=bytes_to_ms(self.bytes_read, self.byte_rate),
        )

        if self.records:
            i = self.config.record_index(chunk.t_start)
            if i >= len(self.records):
                self.log.debug("chunk at %d ms is past the last record", chunk.t_start)
                i = len(self.records) - 1
            chunk.metadata_path = os.path.splitext(self.records[i])[0]
            self.log.debug("read %d bytes for file %s", len(data), chunk.metadata_path)

        return chunk
