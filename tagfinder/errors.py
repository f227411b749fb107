"""Exception types raised across tagfinder."""


class TagfinderError(Exception):
    """Base class for tagfinder errors."""


class StorageError(TagfinderError):
    """A storage key could not be resolved or an object operation failed."""


class TaggingError(TagfinderError):
    """The vision tagging collaborator failed or returned unusable output."""


class ImageNotFoundError(TagfinderError):
    """A job or request referenced an image row that does not exist."""

    def __init__(self, image_id: int):
        super().__init__(f"Image not found for image_id={image_id}")
        self.image_id = image_id


class InvalidUploadError(TagfinderError):
    """Ingestion input was rejected (too large, not a supported image)."""
