class AttendanceError(Exception):
    """Base exception for the attendance system."""


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""


class NoFaceError(FaceEngineError):
    """Raised when no usable face is present in the input image."""


class ModelUnavailableError(FaceEngineError):
    """Raised when a model asset could not be loaded."""


class MalformedInputError(FaceEngineError):
    """Raised when the input image or the model output has the wrong shape."""


class LivenessError(AttendanceError):
    """Raised when the liveness classifier cannot be invoked."""


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""


class DataError(AttendanceError):
    """Raised when stored or supplied data cannot be used for an operation."""


class EmbeddingDimensionError(DataError):
    """Raised when two embeddings of different length are compared."""


class CorruptEmbeddingError(DataError):
    """Raised when a stored embedding cannot be decoded."""


class RemoteServiceError(AttendanceError):
    """Raised when a remote service call fails."""
