# sources/audio_source.py
from abc import ABC, abstractmethod
from typing import Optional

from sources.audio_chunk import ChunkRecord


class AudioSource(ABC):
    @abstractmethod
    async def start(self) -> None:
        """Prepare the source (spawn the decoder, start feeding input, etc.)"""
        pass

    @abstractmethod
    async def next_chunk(self) -> Optional[ChunkRecord]:
        """
        Wait for the next ChunkRecord.
        Return None once the source has signaled end-of-sequence.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Clean shutdown and resource cleanup"""
        pass

    @property
    @abstractmethod
    def is_finished(self) -> bool:
        """
        True if the source will never produce more chunks.
        """
        pass
