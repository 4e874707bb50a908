"""Error taxonomy for the assessment lifecycle.

Repository and network exceptions are caught at the boundary of each
lifecycle operation and converted into one of these. Every error carries a
plain-text ``user_message`` that is safe to show to an end user; the raw
exception (if any) stays on ``__cause__`` for the logs.
"""

from __future__ import annotations


class GARError(Exception):
    """Base class for all lifecycle errors."""

    default_message = "Something went wrong with the assessment."

    def __init__(self, user_message: str | None = None) -> None:
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


class PreconditionError(GARError):
    """A blocking precondition for starting an assessment is not met."""


class NoStationsError(PreconditionError):
    default_message = (
        "Cannot create assessment: no stations are available. "
        "Please contact an administrator to set up stations."
    )


class DraftExistsError(PreconditionError):
    default_message = (
        "Cannot create new assessment: you already have a draft assessment for today. "
        "Please complete or delete the existing draft first."
    )

    def __init__(self, draft_id: str | None = None, user_message: str | None = None) -> None:
        self.draft_id = draft_id
        super().__init__(user_message)


class PersistenceError(GARError):
    """A repository read or write failed."""

    default_message = "The assessment could not be saved. Your changes are kept and can be saved again."


class PublishError(GARError):
    """The final ``complete`` record could not be written."""

    default_message = "Failed to publish assessment. It is still saved as a draft."


class NotificationError(GARError):
    """A notification could not be delivered."""

    default_message = "There was an issue sending email notifications."


class NotFoundError(GARError):
    default_message = "Assessment not found or you do not have permission to view it."


class PermissionDeniedError(GARError):
    default_message = "You do not have permission to edit this assessment."


class InvalidTransitionError(GARError):
    default_message = "That action is not available at this step of the assessment."


class ValidationError(GARError):
    default_message = "The submitted assessment data is not valid."
