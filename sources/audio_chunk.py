# sources/audio_chunk.py
from dataclasses import dataclass

import numpy as np


@dataclass
class ChunkRecord:
    data: bytes                      # raw PCM s16le mono
    t_start: int                     # ms since start of decoded stream
    t_end: int                       # ms
    metadata_path: str | None = None # originating record, extension removed

    def to_dict(self) -> dict:
        return {
            "data": self.data,
            "tStart": self.t_start,
            "tEnd": self.t_end,
            "metadataPath": self.metadata_path,
        }


def bytes_to_ms(n_bytes: int, byte_rate: int) -> int:
    return int(round(n_bytes * 1000 / byte_rate))


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert little-endian 16-bit PCM to float samples in [-1, 1)."""
    usable = len(data) - (len(data) % 2)
    samples = np.frombuffer(data[:usable], dtype="<i2")
    return samples.astype(np.float32) / 32768.0
