"""Domain errors raised by the collection services."""

from __future__ import annotations


class CatalogyError(Exception):
    """Base class for failures the HTTP layer reports to the user."""

    status_code = 400
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationRequired(CatalogyError):
    status_code = 401
    default_message = "Sign in to continue."


class PermissionDenied(CatalogyError):
    status_code = 403
    default_message = "You are not allowed to change this record."


class NotFound(CatalogyError, LookupError):
    status_code = 404
    default_message = "The requested record does not exist."


class ValidationFailed(CatalogyError, ValueError):
    status_code = 400
    default_message = "The request is not valid."


class EmptySelection(ValidationFailed):
    """Raised when neither viewed nor planned entries are requested."""

    default_message = "Choose at least one filter to see results."


class InvalidNickname(ValidationFailed):
    default_message = (
        "Nicknames must be 3-24 characters long and use only letters, digits, '_' or '-'."
    )


class NicknameRequired(ValidationFailed):
    default_message = "Set a nickname before inviting friends or sending recommendations."


class InvalidTransition(ValidationFailed):
    default_message = "This recommendation can no longer change to that status."


class RateLimitExceeded(ValidationFailed):
    status_code = 429
    default_message = "Daily recommendation limit reached. Try again tomorrow."


class ConflictError(CatalogyError):
    status_code = 409
    default_message = "The record conflicts with existing data."


class AlreadyInCollection(ConflictError):
    default_message = "This item is already in your collection."


class NicknameTaken(ConflictError):
    default_message = "This nickname is already taken."


class SaveConflict(ConflictError):
    default_message = "The changes could not be saved because another item already uses this identifier."


class MetadataProviderError(CatalogyError):
    """Raised when an external metadata provider cannot be reached."""

    status_code = 502
    default_message = "The metadata provider is unavailable right now."


class MetadataNotFound(NotFound):
    default_message = "No metadata matches were found for this title."
