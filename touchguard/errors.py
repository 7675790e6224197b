"""Exception types raised by the Touch Guard core"""


class TouchGuardError(Exception):
    """Base class for Touch Guard errors"""


class InitializationError(TouchGuardError):
    """Feature extractor or video source could not be brought up"""


class SourceSwitchError(TouchGuardError):
    """Switching to another video source failed (prior stream kept)"""


class FrameUnavailableError(TouchGuardError):
    """The video source has not produced a frame yet"""


class ExtractionTimeoutError(TouchGuardError):
    """Extraction + classification of one frame exceeded the frame timeout"""


class SnapshotFormatError(TouchGuardError):
    """Persisted snapshot has an unknown version or a malformed entry"""
