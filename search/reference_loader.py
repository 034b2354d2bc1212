from pathlib import Path
import subprocess

import numpy as np

from pipeline.config import FFMPEG_BINARY, SAMPLE_RATE
from sources.audio_chunk import pcm16_to_float32


class ReferenceLoader:
    """Decodes a whole reference file to mono float samples with ffmpeg."""

    def __init__(self, binary: str = FFMPEG_BINARY, sample_rate: int = SAMPLE_RATE):
        self.binary = binary
        self.sample_rate = sample_rate

    def load(self, path: str) -> np.ndarray:
        src = Path(path)
        if not src.exists():
            raise FileNotFoundError(f"Reference file not found: {path}")

        cmd = [
            self.binary,
            "-i",
            str(src),
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(self.sample_rate),
            "-ac",
            "1",
            "-f",
            "s16le",
            "-loglevel",
            "error",
            "pipe:1",
        ]

        result = subprocess.run(cmd, capture_output=True)
        if result.returncode != 0:
            message = result.stderr.decode("utf-8", errors="replace").strip() or "ffmpeg failed to decode reference"
            raise RuntimeError(message)

        return pcm16_to_float32(result.stdout)
