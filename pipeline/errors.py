class PipelineError(Exception):
    """Base error for the file predictor pipeline."""


class ConstructionError(PipelineError):
    """Raised when a pipeline run is built without its mandatory fields."""


class DecodeIOError(PipelineError):
    """Raised when the decoder process cannot be fed or read. Fatal to the run."""


class PredictorError(PipelineError):
    """Raised when a single predictor fails on a chunk. Never fatal to the run."""
