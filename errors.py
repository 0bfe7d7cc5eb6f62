class KeychainError(Exception):
    """Base class for every recoverable or reportable pipeline failure."""

    code = "keychain_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


# Upload problems: surfaced immediately, the pipeline does not advance.

class InputError(KeychainError):
    """The uploaded file could not be used."""
    code = "input_error"


class UnsupportedFormat(InputError):
    """The uploaded file is not a supported image format."""
    code = "unsupported_format"


class TooLarge(InputError):
    """The uploaded file exceeds the size limit."""
    code = "too_large"


class CorruptData(InputError):
    """The uploaded image could not be decoded."""
    code = "corrupt_data"


# Segmentation problems: recoverable by uploading a different image.

class SegmentationError(KeychainError):
    """No printable subject could be isolated. Try a different image."""
    code = "segmentation_error"

    suggestion = "Try an image with a clear subject on a plain background."


class NoSubjectDetected(SegmentationError):
    """No subject could be distinguished from the background."""
    code = "no_subject_detected"


class EmptyMask(SegmentationError):
    """The subject mask is empty."""
    code = "empty_mask"


class AnalysisUnavailable(KeychainError):
    """The manufacturability check is unavailable right now. Please retry."""
    code = "analysis_unavailable"


# Caller bugs: these must never be swallowed.

class StateError(KeychainError):
    """The operation is not valid in the current placement state."""
    code = "state_error"


class NotReady(StateError):
    """No printable verdict has been applied yet."""
    code = "not_ready"


class InvalidTransition(StateError):
    """The requested transition is not allowed from the current state."""
    code = "invalid_transition"


class InvalidPlacementValue(KeychainError):
    """Placement values must be finite numbers."""
    code = "invalid_placement_value"


class UploadSuperseded(KeychainError):
    """This upload was replaced by a newer one."""
    code = "upload_superseded"


class PersistenceError(KeychainError):
    """The design could not be saved."""
    code = "persistence_error"
