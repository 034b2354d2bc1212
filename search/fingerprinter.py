from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class FingerprintConfig:
    n_fft: int = 1024
    hop: int = 256
    peaks_per_frame: int = 3
    fan_out: int = 5
    max_dt: int = 63          # frames; must fit in 8 bits
    min_magnitude: float = 1e-3


class Fingerprinter:
    """
    Spectral-peak landmark fingerprints. Each hash packs
    (anchor bin, target bin, frame delta); its time is the anchor frame.
    """

    def __init__(self, config: FingerprintConfig | None = None):
        self.config = config or FingerprintConfig()
        if self.config.max_dt >= 256:
            raise ValueError("max_dt must be below 256")
        self._window = np.hanning(self.config.n_fft).astype(np.float32)

    def fingerprint(self, samples: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns:
            hashes: (N,) int64
            times: (N,) int64 anchor frame indices
        """
        peaks = self.peaks(self.spectrogram(samples))
        hashes: list[int] = []
        times: list[int] = []

        for i, (t1, f1) in enumerate(peaks):
            paired = 0
            for j in range(i + 1, len(peaks)):
                t2, f2 = peaks[j]
                dt = t2 - t1
                if dt == 0:
                    continue
                if dt > self.config.max_dt or paired >= self.config.fan_out:
                    break
                hashes.append((f1 << 18) | (f2 << 8) | dt)
                times.append(t1)
                paired += 1

        return np.array(hashes, dtype=np.int64), np.array(times, dtype=np.int64)

    def spectrogram(self, samples: np.ndarray) -> np.ndarray:
        n_fft, hop = self.config.n_fft, self.config.hop
        if len(samples) < n_fft:
            return np.zeros((0, n_fft // 2 + 1), dtype=np.float32)

        n_frames = 1 + (len(samples) - n_fft) // hop
        idx = np.arange(n_fft)[None, :] + hop * np.arange(n_frames)[:, None]
        frames = samples[idx].astype(np.float32) * self._window
        return np.abs(np.fft.rfft(frames, axis=1)).astype(np.float32)

    def peaks(self, spec: np.ndarray) -> list[tuple[int, int]]:
        k = self.config.peaks_per_frame
        out: list[tuple[int, int]] = []
        for t, frame in enumerate(spec):
            if frame.max() < self.config.min_magnitude:
                continue
            top = np.argpartition(frame, -k)[-k:]
            for f in sorted(int(b) for b in top):
                if frame[f] >= self.config.min_magnitude:
                    out.append((t, f))
        return out

    def frames_to_seconds(self, frames: float, sample_rate: int) -> float:
        return frames * self.config.hop / float(sample_rate)
