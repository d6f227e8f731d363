"""
HTTP routes for the preference API.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from prefstore.dependencies import (
    get_owner,
    get_preference_key,
    get_preferences_body,
    get_store,
)
from prefstore.errors import InvalidRequestError, StoreError
from prefstore.schemas import HealthResponse, PreferenceResponse, PreferencesResponse
from prefstore.store import PreferenceStore

logger = logging.getLogger(__name__)

health_router = APIRouter()
router = APIRouter()

PREFERENCES_PATH = "/users/{userId}/preferences"
PREFERENCE_PATH = "/users/{userId}/preferences/{key}"


def _store_failure(
    operation: str,
    exc: StoreError,
    message: str,
    user_id: str,
    key: Optional[str] = None,
) -> HTTPException:
    logger.error(
        "store.%s failed kind=%s user_id=%s key=%s error=%s",
        operation,
        exc.kind,
        user_id,
        key,
        exc,
    )
    return HTTPException(status_code=500, detail=message)


@health_router.get("/healthz", response_model=HealthResponse)
def healthz():
    return HealthResponse(status="ok")


@router.get(PREFERENCES_PATH, response_model=PreferencesResponse)
def get_preferences(
    user_id: str = Depends(get_owner),
    store: PreferenceStore = Depends(get_store),
):
    """
    Return every preference of the user; a user who never saved any gets {}.
    """
    try:
        preferences = store.get_all(user_id)
    except StoreError as exc:
        raise _store_failure(
            "get_all", exc, "failed to retrieve preferences", user_id
        ) from exc
    return PreferencesResponse(user_id=user_id, preferences=preferences or {})


@router.get(PREFERENCE_PATH, response_model=PreferenceResponse)
def get_preference(
    user_id: str = Depends(get_owner),
    key: str = Depends(get_preference_key),
    store: PreferenceStore = Depends(get_store),
):
    try:
        value = store.get(user_id, key)
    except StoreError as exc:
        raise _store_failure(
            "get", exc, "failed to retrieve preference", user_id, key
        ) from exc
    if value is None:
        raise HTTPException(status_code=404, detail="preference not found")
    return PreferenceResponse(key=key, value=value)


@router.api_route(
    PREFERENCES_PATH, methods=["PUT", "POST"], response_model=PreferencesResponse
)
def replace_preferences(
    user_id: str = Depends(get_owner),
    preferences: Dict[str, str] = Depends(get_preferences_body),
    store: PreferenceStore = Depends(get_store),
):
    try:
        store.replace_all(user_id, preferences)
    except StoreError as exc:
        raise _store_failure(
            "replace_all", exc, "failed to save preferences", user_id
        ) from exc
    return PreferencesResponse(user_id=user_id, preferences=preferences)


@router.patch(PREFERENCES_PATH, response_model=PreferencesResponse)
def merge_preferences(
    user_id: str = Depends(get_owner),
    preferences: Dict[str, str] = Depends(get_preferences_body),
    store: PreferenceStore = Depends(get_store),
):
    """
    Merge the given keys into the user's preferences and return the result.
    """
    if not preferences:
        raise InvalidRequestError("empty preferences")
    try:
        merged = store.update(user_id, preferences)
    except StoreError as exc:
        raise _store_failure(
            "update", exc, "failed to update preferences", user_id
        ) from exc
    return PreferencesResponse(user_id=user_id, preferences=merged)


@router.delete(PREFERENCES_PATH, status_code=204, response_class=Response)
def delete_preferences(
    user_id: str = Depends(get_owner),
    store: PreferenceStore = Depends(get_store),
):
    try:
        store.delete_all(user_id)
    except StoreError as exc:
        raise _store_failure(
            "delete_all", exc, "failed to delete preferences", user_id
        ) from exc
    return Response(status_code=204)


@router.delete(PREFERENCE_PATH, status_code=204, response_class=Response)
def delete_preference(
    user_id: str = Depends(get_owner),
    key: str = Depends(get_preference_key),
    store: PreferenceStore = Depends(get_store),
):
    try:
        store.delete(user_id, key)
    except StoreError as exc:
        raise _store_failure(
            "delete", exc, "failed to delete preference", user_id, key
        ) from exc
    return Response(status_code=204)
