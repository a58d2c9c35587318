"""
Error kinds raised by the course ordering and subscription code.

Each kind carries the HTTP status the API layer answers with.
"""


class CoursePlatformError(Exception):
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(CoursePlatformError):
    status_code = 404


class InvalidPositionError(CoursePlatformError):
    pass


class InvalidVideoReferenceError(CoursePlatformError):
    pass


class EmptyListError(CoursePlatformError):
    pass


class DanglingReferenceError(CoursePlatformError):
    """A course lists a video id that no longer resolves."""

    status_code = 500


class MetadataResolutionError(CoursePlatformError):
    """A payment event could not be tied to a user."""


class InvalidEventPayloadError(CoursePlatformError):
    pass


class PersistenceError(CoursePlatformError):
    status_code = 503
