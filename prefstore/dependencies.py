"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import Depends, Header, Path, Request

from prefstore.auth import Principal, TokenVerifier, authorize
from prefstore.config import Settings
from prefstore.dynamo_store import DynamoPreferenceStore
from prefstore.errors import InvalidRequestError
from prefstore.schemas import parse_preferences
from prefstore.sql_store import SqlPreferenceStore
from prefstore.store import InMemoryPreferenceStore, PreferenceStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> PreferenceStore:
    """Pick the storage backend described by ``settings``."""
    if settings.use_in_memory_backends:
        logger.warning("Using in-memory preference store; data is not persisted")
        return InMemoryPreferenceStore()
    if settings.database_url:
        return SqlPreferenceStore(settings.database_url)
    return DynamoPreferenceStore.from_settings(settings)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> PreferenceStore:
    return request.app.state.store


def get_verifier(request: Request) -> TokenVerifier:
    return request.app.state.verifier


def get_principal(
    authorization: Optional[str] = Header(default=None),
    verifier: TokenVerifier = Depends(get_verifier),
) -> Principal:
    return verifier.verify(authorization)


def get_owner(
    principal: Principal = Depends(get_principal),
    user_id: str = Path(..., alias="userId"),
) -> str:
    """Return the path user id once the caller is shown to own it."""
    if not user_id.strip():
        raise InvalidRequestError("missing userId")
    return authorize(principal, user_id)


def get_preference_key(key: str = Path(...)) -> str:
    if not key.strip():
        raise InvalidRequestError("missing key")
    return key


async def get_preferences_body(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> Dict[str, str]:
    raw = await request.body()
    return parse_preferences(
        raw,
        max_items=settings.max_preferences,
        max_key_length=settings.max_key_length,
        max_value_length=settings.max_value_length,
        max_total_bytes=settings.max_request_bytes,
    )
