"""Errors raised by the image preparation pipeline and the upload session."""


class ImagePipelineError(Exception):
    """Base class for image preparation failures."""

    user_message = "Something went wrong while preparing this image."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class DecodeError(ImagePipelineError):
    """The bytes are not a readable raster image (or not valid base64)."""

    user_message = "Could not read this image."


class EncodeError(ImagePipelineError):
    """The codec rejected the preset's format/quality. A configuration defect."""

    user_message = "Could not encode this image."


class StaleResultDiscarded(ImagePipelineError):
    """A compression finished for a selection that is no longer current."""

    user_message = ""

    def __init__(self, generation: int, current: int | None):
        self.generation = generation
        self.current = current
        super().__init__(
            f"Result for selection {generation} discarded (current: {current})"
        )


class UploadPrecompressionFailed(ImagePipelineError):
    """The upload artifact could not be produced, so submission cannot proceed."""

    user_message = "Could not prepare this photo for upload. Please try again or pick another photo."


class CaptioningUnavailable(Exception):
    """No caption could be generated. Uploading may continue without one."""

    user_message = "A description could not be generated. You can still upload the photo."

    def __init__(self, cause: Exception | None = None):
        self.cause = cause
        super().__init__(getattr(cause, "user_message", None) or self.user_message)
