import logging
from math import gcd

import numpy as np
import torch
from scipy.signal import resample_poly
from transformers import ASTFeatureExtractor, ASTModel

from pipeline.logging_utils import get_logger

AST_CHECKPOINT = "MIT/ast-finetuned-audioset-10-10-0.4593"
AST_SAMPLE_RATE = 16000


class Embedder:
    def __init__(self, checkpoint: str = AST_CHECKPOINT, logger: logging.Logger | None = None):
        self.log = logger or get_logger(__name__)
        self.device = self._pick_device()

        self.log.info("loading AST model %s", checkpoint)
        self.feature_extractor = ASTFeatureExtractor.from_pretrained(checkpoint)
        self.model = ASTModel.from_pretrained(checkpoint).to(self.device)
        self.model.eval()

    def _pick_device(self) -> torch.device:
        if torch.backends.mps.is_available():
            self.log.info("using Apple Metal (GPU)")
            return torch.device("mps")
        if torch.cuda.is_available():
            self.log.info("using CUDA (GPU)")
            return torch.device("cuda")
        self.log.info("using CPU")
        return torch.device("cpu")

    def embed_samples(self, samples: np.ndarray, sample_rate: int) -> np.ndarray:
        """
        Parameters:
            samples: mono float samples in [-1, 1)
            sample_rate: rate of `samples`

        Returns:
            embedding: (D,)
        """
        audio = resample(samples, sample_rate, AST_SAMPLE_RATE)

        # AST needs at least one second of context
        if len(audio) < AST_SAMPLE_RATE:
            audio = np.pad(audio, (0, AST_SAMPLE_RATE - len(audio)))

        inputs = self.feature_extractor(
            [audio],
            sampling_rate=AST_SAMPLE_RATE,
            return_tensors="pt"
        )
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            outputs = self.model(**inputs)

        return outputs.pooler_output[0].cpu().numpy()


def resample(samples: np.ndarray, rate_in: int, rate_out: int) -> np.ndarray:
    samples = np.asarray(samples, dtype=np.float32)
    if rate_in == rate_out or len(samples) == 0:
        return samples

    # 22050 -> 16000 is up 320, down 441
    g = gcd(rate_in, rate_out)
    return resample_poly(samples, rate_out // g, rate_in // g).astype(np.float32)
