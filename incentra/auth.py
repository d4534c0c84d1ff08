"""API-key authentication and the permission oracle used by the REST API."""

from __future__ import annotations

import json
import logging
from functools import lru_cache

from fastapi import Header, HTTPException, status
from pydantic import BaseModel, Field, ValidationError

from incentra.collaborators import Actor, Capability
from incentra.config import settings

logger = logging.getLogger(__name__)


class ApiKeyRecord(BaseModel):
    """Configuration record for one API key."""

    key: str = Field(min_length=8)
    user_id: str = Field(min_length=1)
    uid: str = ""
    role: str = "faculty"  # faculty | staff | student
    capabilities: list[str] = Field(default_factory=list)
    school_ids: list[str] = Field(default_factory=list)

    def to_actor(self) -> Actor:
        return Actor(
            id=self.user_id,
            uid=self.uid,
            role=self.role,
            capabilities=frozenset(self.capabilities),
            school_ids=frozenset(self.school_ids),
        )


def _normalize_records(raw: object) -> list[ApiKeyRecord]:
    records: list[ApiKeyRecord] = []

    if isinstance(raw, list):
        items = [item for item in raw if isinstance(item, dict)]
    elif isinstance(raw, dict):
        # Dict form: {"<api-key>": {"user_id": "...", "capabilities": [...]}}
        items = [{"key": key, **meta} for key, meta in raw.items() if isinstance(meta, dict)]
    else:
        items = []

    for item in items:
        try:
            records.append(ApiKeyRecord(**item))
        except ValidationError:
            logger.warning("ignoring malformed API key record for user_id=%s", item.get("user_id"))
    return records


@lru_cache(maxsize=1)
def _key_index() -> dict[str, ApiKeyRecord]:
    raw = settings.security.api_keys_json.strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("INCENTRA_API_KEYS_JSON is not valid JSON")
        return {}
    return {rec.key: rec for rec in _normalize_records(parsed)}


def reload_api_key_cache() -> None:
    """Clear cached API keys (useful in tests or runtime key rotation hooks)."""
    _key_index.cache_clear()


class ApiKeyPermissionOracle:
    """Permission oracle backed by the configured API key records."""

    def _records(self) -> list[ApiKeyRecord]:
        return list(_key_index().values())

    def has_permission(self, user_id: str, capability: Capability | str) -> bool:
        return any(
            rec.to_actor().has_permission(capability) for rec in self._records() if rec.user_id == user_id
        )

    def current_user(self, api_key: str | None) -> Actor | None:
        if not api_key:
            return None
        record = _key_index().get(api_key)
        return record.to_actor() if record else None

    def holders_of(self, capability: Capability | str) -> list[str]:
        holders: list[str] = []
        for rec in self._records():
            if rec.to_actor().has_permission(capability) and rec.user_id not in holders:
                holders.append(rec.user_id)
        return holders


oracle = ApiKeyPermissionOracle()


async def get_actor(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Actor:
    """Resolve the calling actor from the X-API-Key header."""
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    actor = oracle.current_user(x_api_key)
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    return actor
