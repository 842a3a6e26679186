"""
Profile cache: the device's media profiles and name -> token resolution.
"""

import logging
from typing import Any, Iterable, List, Optional, Tuple

from camlink.models.device import Profile

logger = logging.getLogger(__name__)


def _lookup(raw: Any, *names: str) -> Any:
    for name in names:
        if isinstance(raw, dict):
            value = raw.get(name)
        else:
            value = getattr(raw, name, None)
        if value is not None:
            return value
    return None


def normalize_profile(raw: Any) -> Optional[Profile]:
    """
    Normalize a raw profile (zeep object or dict) to a Profile.

    Profiles without a token are discarded (None). A missing name falls back
    to the token.
    """
    token = _lookup(raw, "token", "Token")
    if token is None and isinstance(raw, dict):
        # xml2js-style attribute bag
        token = (raw.get("$") or {}).get("token")
    if not token:
        return None

    name = _lookup(raw, "Name", "name")
    return Profile(name=str(name) if name is not None else str(token), token=str(token), raw=raw)


class ProfileCache:
    """
    Ordered, read-only snapshot of the device's profiles.

    The snapshot is replaced wholesale on every connect and never mutated in
    place. Names are not unique on every device; resolve() returns the first
    match in device order.
    """

    def __init__(self):
        self._profiles: Tuple[Profile, ...] = ()

    def replace(self, raw_profiles: Optional[Iterable[Any]]):
        profiles: List[Profile] = []
        seen = set()

        for raw in raw_profiles or ():
            profile = normalize_profile(raw)
            if profile is None:
                logger.debug(f"Discarding profile without token: {raw!r}")
                continue
            if profile.token in seen:
                continue
            seen.add(profile.token)
            profiles.append(profile)

        self._profiles = tuple(profiles)

    def clear(self):
        self._profiles = ()

    def all(self) -> List[Profile]:
        return list(self._profiles)

    def get(self, token: str) -> Optional[Profile]:
        for profile in self._profiles:
            if profile.token == token:
                return profile
        return None

    def resolve(self, name: str) -> Optional[str]:
        for profile in self._profiles:
            if profile.name == name:
                return profile.token
        return None

    def __len__(self) -> int:
        return len(self._profiles)
