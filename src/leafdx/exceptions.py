"""Error taxonomy for the LeafDx classification pipeline."""


class LeafDxError(Exception):
    """Base class for all LeafDx exceptions."""


class LoadError(LeafDxError):
    """Raised when model bytes cannot be turned into a usable inference session."""


class NotInitializedError(LeafDxError):
    """Raised when inference is attempted before a successful load or after shutdown."""


class DecodeError(LeafDxError):
    """Raised when image bytes cannot be decoded into an RGB raster."""
