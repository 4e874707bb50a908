"""Recipient Resolver: expand a recipient selection against the live directory."""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Mapping

import structlog

from gar.schemas.recipients import NotificationRecipient, RecipientGroup, RecipientSelection

logger = structlog.get_logger()


# Closed set of recipient groups, each a predicate over the user's role
RECIPIENT_GROUPS = {
    "all_firefighters": {
        "name": "All Firefighters",
        "description": "All users with firefighter role",
        "roles": {"firefighter"},
    },
    "all_officers": {
        "name": "All Officers",
        "description": "All users with captain or lieutenant roles",
        "roles": {"captain", "lieutenant"},
    },
    "all_chiefs": {
        "name": "Chief Staff",
        "description": "All users with chief or admin roles",
        "roles": {"chief", "admin"},
    },
    "all_active": {
        "name": "All Active Personnel",
        "description": "All active users regardless of role",
        "roles": None,
    },
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PLACEHOLDER_EMAIL_MARKERS = ("@example.com", "@example.org", "@test.invalid", ".invalid", "noreply@", "no-reply@")


def list_groups() -> list[RecipientGroup]:
    return [
        RecipientGroup(id=group_id, name=group["name"], description=group["description"])
        for group_id, group in RECIPIENT_GROUPS.items()
    ]


def is_plausible_email(email: Any) -> bool:
    """A syntactically plausible address that is not a known placeholder."""
    if not isinstance(email, str) or not _EMAIL_RE.match(email):
        return False
    lowered = email.lower()
    return not any(marker in lowered for marker in PLACEHOLDER_EMAIL_MARKERS)


def is_notifiable(user: Mapping[str, Any]) -> bool:
    """Active with a usable email. Users without a status count as active."""
    return (user.get("status") or "active") == "active" and is_plausible_email(user.get("email"))


def group_predicate(group_id: str) -> Callable[[Mapping[str, Any]], bool] | None:
    group = RECIPIENT_GROUPS.get(group_id)
    if group is None:
        return None
    roles = group["roles"]
    if roles is None:
        return lambda user: True
    return lambda user: (user.get("role") or "").lower() in roles


def to_recipient(user: Mapping[str, Any]) -> NotificationRecipient:
    email = user["email"]
    display_name = user.get("display_name") or user.get("name") or email.split("@")[0]
    return NotificationRecipient(
        id=str(user.get("id") or user.get("user_id") or email),
        email=email,
        display_name=display_name,
        station=user.get("station"),
        role=user.get("role"),
    )


def resolve_recipients(
    selection: RecipientSelection | Mapping[str, Any],
    directory: Iterable[Mapping[str, Any]],
) -> list[NotificationRecipient]:
    """Expand groups and individual users into a deduplicated recipient list.

    Order is stable: group members in selection order (directory order within
    a group), then individually selected users. Duplicates are removed by
    exact email, first occurrence wins. Users who are inactive or lack a
    usable email are silently skipped, as are unknown group ids.
    """
    if not isinstance(selection, RecipientSelection):
        selection = RecipientSelection.model_validate(dict(selection))

    eligible = [user for user in directory if is_notifiable(user)]
    by_id = {}
    for user in eligible:
        user_id = user.get("id") or user.get("user_id")
        if user_id is not None:
            by_id.setdefault(str(user_id), user)

    resolved: list[NotificationRecipient] = []
    seen_emails: set[str] = set()

    def _add(user: Mapping[str, Any]) -> None:
        if user["email"] in seen_emails:
            return
        seen_emails.add(user["email"])
        resolved.append(to_recipient(user))

    for group_id in selection.groups:
        predicate = group_predicate(group_id)
        if predicate is None:
            logger.warning("unknown_recipient_group", group_id=group_id)
            continue
        for user in eligible:
            if predicate(user):
                _add(user)

    for user_id in selection.users:
        user = by_id.get(str(user_id))
        if user is None:
            logger.info("recipient_not_eligible", user_id=user_id)
            continue
        _add(user)

    return resolved
