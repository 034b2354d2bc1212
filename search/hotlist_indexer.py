import logging
import os
from typing import Protocol

import numpy as np

from pipeline.logging_utils import get_logger
from search.fingerprinter import Fingerprinter
from storage.fingerprint_store import FingerprintStore


class SampleLoader(Protocol):
    def load(self, path: str) -> np.ndarray: ...


class HotlistIndexer:
    def __init__(
        self,
        store: FingerprintStore,
        loader: SampleLoader,
        fingerprinter: Fingerprinter | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.loader = loader
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.log = logger or get_logger(__name__)

    def index(self, path: str, class_name: str) -> int:
        """
        Fingerprints one reference file and stores it under its base name.
        Returns the number of fingerprints stored.
        """
        samples = self.loader.load(path)
        hashes, times = self.fingerprinter.fingerprint(samples)
        if len(hashes) == 0:
            self.log.warning("no fingerprints for %s; skipped", path)
            return 0

        track_id = self.store.add_track(os.path.basename(path), class_name, hashes, times)
        self.log.info("indexed %s as track %d (%d fingerprints)", path, track_id, len(hashes))
        return len(hashes)
