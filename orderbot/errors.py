"""Exceptions shared across the ordering engine."""


class ExternalServiceError(Exception):
    """An external collaborator (model, speech, geocoder, image host) failed or timed out."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class OrderValidationError(Exception):
    """An order payload is malformed or incomplete."""

    def __init__(self, message: str, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing = missing


class ImageCompositionError(Exception):
    """Two half images could not be combined."""
