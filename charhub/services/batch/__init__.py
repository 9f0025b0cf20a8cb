from charhub.services.batch.error_handler import BatchErrorHandler, ErrorRecorder, LoggingErrorRecorder
from charhub.services.batch.diversification import DiversificationAlgorithm
from charhub.services.batch.batch_generator import (
    BatchCharacterGenerator,
    BatchConfigSource,
    GenerationPipeline,
    ItemTimeoutError,
    default_criteria,
)

__all__ = [
    "BatchErrorHandler",
    "ErrorRecorder",
    "LoggingErrorRecorder",
    "DiversificationAlgorithm",
    "BatchCharacterGenerator",
    "BatchConfigSource",
    "GenerationPipeline",
    "ItemTimeoutError",
    "default_criteria",
]
