import json
from typing import Any, Protocol, TextIO


class Sink(Protocol):
    def write(self, obj: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


class ListSink:
    """Keeps every written object in memory."""

    def __init__(self):
        self.items: list[dict[str, Any]] = []
        self.closed = False

    def write(self, obj: dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError("write to closed sink")
        self.items.append(obj)

    def close(self) -> None:
        if self.closed:
            raise RuntimeError("sink closed twice")
        self.closed = True

    def of_type(self, type_name: str) -> list[dict[str, Any]]:
        return [obj for obj in self.items if obj.get("type") == type_name]


class JsonLinesSink:
    """Writes one JSON document per object. Audio bytes are replaced by their length."""

    def __init__(self, stream: TextIO, include_audio: bool = False):
        self.stream = stream
        self.include_audio = include_audio
        self.closed = False

    def write(self, obj: dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError("write to closed sink")
        self.stream.write(json.dumps(self._encode(obj)) + "\n")
        self.stream.flush()

    def close(self) -> None:
        if self.closed:
            raise RuntimeError("sink closed twice")
        self.closed = True
        self.stream.flush()

    def _encode(self, obj: dict[str, Any]) -> dict[str, Any]:
        out = dict(obj)
        data = out.get("data")
        if isinstance(data, (bytes, bytearray)):
            out["data"] = data.hex() if self.include_audio else len(data)
        return out
