"""Error taxonomy for code generation, persistence and share-link access."""

from __future__ import annotations


class CodeShareError(Exception):
    """Base class for all CodeShare errors."""


class InvalidSecretError(CodeShareError):
    """The TOTP secret is empty or not valid base32."""


class PersistFailure(CodeShareError):
    """The backend could not store the current code. Non-fatal."""


class LinkError(CodeShareError):
    """Base for errors that end a shared viewing session."""

    message = "This share link is not valid"
    kind = "error"
    is_deletion = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    @property
    def reason(self) -> str:
        return str(self)


class LinkNotFoundError(LinkError):
    message = "This share link is invalid or has been deleted"
    kind = "not_found"


class LinkAlreadyUsedError(LinkNotFoundError):
    message = "Share link not found or already used"
    kind = "already_used"


class LinkDeletedError(LinkError):
    message = "This shared link has been deleted by the administrator."
    kind = "deleted"
    is_deletion = True


class LinkExpiredError(LinkError):
    message = "This share link has expired"
    kind = "expired"


class AccessDeniedError(LinkError):
    message = "You must be logged in to access this link"
    kind = "access_denied"

    def __init__(self, email: str | None = None) -> None:
        self.email = email
        if email:
            super().__init__(f"Access denied. Your email ({email}) is not authorized to view this link.")
        else:
            super().__init__()
