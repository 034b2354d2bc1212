import math
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Mapping

# Decoder output format: 16 bit little-endian PCM, mono.
SAMPLE_RATE = 22050
BYTES_PER_SAMPLE = 2
BYTE_RATE = SAMPLE_RATE * BYTES_PER_SAMPLE

FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")

ML_MODEL_EXT = ".pt"
HOTLIST_DB_EXT = ".sqlite"
METADATA_SUFFIX = ".json"
CHUNK_TYPE = "fileChunk"

_OPTION_NAMES = {
    "predInterval": "pred_interval",
    "saveDuration": "save_duration",
    "enablePredictorMl": "enable_predictor_ml",
    "enablePredictorHotlist": "enable_predictor_hotlist",
    "saveAudio": "save_audio",
    "saveMetadata": "save_metadata",
    "fetchMetadata": "fetch_metadata",
}


@dataclass(frozen=True)
class PipelineConfig:
    pred_interval: float = 1.0    # seconds of audio per chunk
    save_duration: int = 10       # predInterval windows per record file
    enable_predictor_ml: bool = True
    enable_predictor_hotlist: bool = True
    # read by sink collaborators only
    save_audio: bool = False
    save_metadata: bool = False
    fetch_metadata: bool = False

    def __post_init__(self) -> None:
        if not self.pred_interval or self.pred_interval <= 0:
            raise ValueError(f"predInterval must be positive, got {self.pred_interval!r}")
        if int(self.save_duration) < 1:
            raise ValueError(f"saveDuration must be at least 1, got {self.save_duration!r}")

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None = None) -> "PipelineConfig":
        """
        Build a config from camelCase options. Snake_case field names are
        accepted too. Unknown names raise ValueError.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in (options or {}).items():
            field_name = _OPTION_NAMES.get(key, key)
            if field_name not in known:
                raise ValueError(f"Unknown config option: {key}")
            kwargs[field_name] = value
        return cls(**kwargs)

    def to_options(self) -> dict[str, Any]:
        values = asdict(self)
        return {option: values[name] for option, name in _OPTION_NAMES.items()}

    def window_size(self, byte_rate: int = BYTE_RATE) -> int:
        size = int(round(self.pred_interval * byte_rate))
        if size <= 0:
            raise ValueError(f"predInterval {self.pred_interval} is too small for byte rate {byte_rate}")
        return size

    def record_index(self, t_start_ms: int) -> int:
        return int(math.floor(t_start_ms / 1000 / self.pred_interval / self.save_duration))


def model_file(model_dir: str, country: str, name: str, ext: str) -> str:
    return os.path.join(model_dir, f"{country}_{name}{ext}")
