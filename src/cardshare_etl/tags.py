"""cardshare_etl.tags

Free-form tag ("MyTag") aggregation and per-user tag sales settings.

A tag counts for a user when at least one of their cards carries a
non-empty value for it.  Sources:
  - private cards of the user's supporter row
  - active shared cards shared by the user
  - active shared cards the user contributed to
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from cardshare_etl.identity import AuthenticatedUser
from cardshare_etl.store import CardRepository

log = logging.getLogger(__name__)


def _tags_with_values(tag_maps: Iterable[dict[str, Any]]) -> set[str]:
    found: set[str] = set()
    for tag_map in tag_maps:
        for tag, value in tag_map.items():
            if value:
                found.add(tag)
    return found


def private_user_tags(repo: CardRepository, user: AuthenticatedUser) -> list[str]:
    """Sorted tags from the user's private cards only."""
    supporter_id = repo.find_supporter_id(user.email)
    if supporter_id is None:
        return []
    return sorted(_tags_with_values(repo.private_tag_maps(supporter_id)))


def all_user_tags(repo: CardRepository, user: AuthenticatedUser) -> list[str]:
    """Sorted union of tags across private, shared-by-user and contributed cards."""
    found: set[str] = set()
    supporter_id = repo.find_supporter_id(user.email)
    if supporter_id is not None:
        found |= _tags_with_values(repo.private_tag_maps(supporter_id))
    found |= _tags_with_values(repo.shared_tag_maps(user.id))
    found |= _tags_with_values(repo.contributed_tag_maps(user.id))
    log.debug("user %s has %d distinct tags", user.id, len(found))
    return sorted(found)


def needs_tag_settings_step(repo: CardRepository, user: AuthenticatedUser) -> bool:
    """Post-upload branch: show the tag settings step if the user has any tag."""
    return bool(all_user_tags(repo, user))


def load_tag_settings(
    repo: CardRepository,
    user_id: str,
    tags: list[str],
) -> dict[str, bool]:
    """Allowed/blocked per tag; tags without a stored setting are allowed."""
    stored = repo.tag_settings(user_id)
    return {tag: stored.get(tag, True) for tag in tags}


def save_tag_settings(
    repo: CardRepository,
    user_id: str,
    settings: dict[str, bool],
) -> None:
    """Upsert settings for the given tags.  Settings are never deleted."""
    for tag, allow in settings.items():
        if not isinstance(allow, bool):
            raise TypeError(f"setting for tag {tag!r} must be a bool, got {allow!r}")
    repo.upsert_tag_settings(user_id, settings)
    repo.commit()
