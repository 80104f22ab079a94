# errors.py


class ReceiptPipelineError(Exception):
    """Base class for failures raised by the receipt scanning pipeline."""


class ImageDecodeError(ReceiptPipelineError):
    """The input bytes are not a decodable image."""


class RenderingUnavailable(ReceiptPipelineError):
    """The drawing surface needed for preprocessing could not be obtained."""


class EngineUnavailable(ReceiptPipelineError):
    """The recognition engine failed to start or crashed mid-request."""


class RecognitionTimeout(ReceiptPipelineError):
    """The whole aggregation call ran past its wall-clock budget."""
