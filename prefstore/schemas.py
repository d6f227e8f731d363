"""
Pydantic schemas and request body decoding for the preference API.
"""

from __future__ import annotations

from typing import Dict, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from prefstore.errors import InvalidRequestError

_PREFERENCE_MAP = TypeAdapter(Dict[str, str])


class PreferencesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    preferences: Dict[str, str]


class PreferenceResponse(BaseModel):
    key: str
    value: str


class ErrorResponse(BaseModel):
    error: str
    code: int


class HealthResponse(BaseModel):
    status: Literal["ok"]


def parse_preferences(
    raw: bytes,
    *,
    max_items: int,
    max_key_length: int,
    max_value_length: int,
    max_total_bytes: int,
) -> Dict[str, str]:
    """
    Decode a request body into a flat string-to-string map.

    Strict: numbers, booleans, null, arrays and nested objects are rejected
    rather than coerced.
    """
    if len(raw) > max_total_bytes:
        raise InvalidRequestError(f"request body exceeds {max_total_bytes} bytes")
    try:
        preferences = _PREFERENCE_MAP.validate_json(raw, strict=True)
    except ValidationError as exc:
        raise InvalidRequestError("invalid JSON body") from exc

    if len(preferences) > max_items:
        raise InvalidRequestError(f"too many preferences (max {max_items})")
    for key, value in preferences.items():
        if not key:
            raise InvalidRequestError("preference keys must not be empty")
        if len(key) > max_key_length:
            raise InvalidRequestError(
                f"preference key exceeds {max_key_length} characters"
            )
        if len(value) > max_value_length:
            raise InvalidRequestError(
                f"preference value for {key!r} exceeds {max_value_length} characters"
            )
    return preferences
