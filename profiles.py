"""Read-only lookups against the senior profile collection."""
import logging
from typing import Optional

import pytz

from database import DocumentStore
from schemas import SENIOR_PROFILES, SeniorProfile

logger = logging.getLogger(__name__)


def get_senior_profile(store: DocumentStore, senior_id: str) -> Optional[SeniorProfile]:
    doc = store.get(SENIOR_PROFILES, senior_id)
    if doc is None:
        return None
    return SeniorProfile.model_validate(dict(doc, id=senior_id))


def senior_timezone(store: DocumentStore, senior_id: str, default: str):
    profile = get_senior_profile(store, senior_id)
    name = profile.time_zone if profile and profile.time_zone else default
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown time zone %r for senior %s, using %s", name, senior_id, default)
        return pytz.timezone(default)


def senior_name(store: DocumentStore, senior_id: str) -> Optional[str]:
    profile = get_senior_profile(store, senior_id)
    return profile.name if profile and profile.name else None
