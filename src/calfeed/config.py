from __future__ import annotations

import os
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session, select

from calfeed.models import Settings

DEFAULT_SETTINGS: dict[str, str] = {
    "timezone": "UTC",
    "http_timeout_sec": "30",
    "sync_lock_ttl_sec": "600",
    "default_feed_color": "#BF616A",
    "max_occurrences_per_master": "5000",
}

ALLOWED_SETTING_KEYS: set[str] = set(DEFAULT_SETTINGS)
DEFAULT_USER_ID = "local"

_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
_POSITIVE_INT_KEYS: set[str] = {"sync_lock_ttl_sec", "max_occurrences_per_master"}
_FLOAT_RANGE_KEYS: dict[str, tuple[float, float]] = {
    "http_timeout_sec": (1.0, 300.0),
}


def validate_setting(key: str, value: str) -> None:
    if key not in ALLOWED_SETTING_KEYS:
        allowed = ", ".join(sorted(ALLOWED_SETTING_KEYS))
        raise ValueError(f"Unknown setting key: {key}. Allowed keys: {allowed}.")

    if key == "timezone":
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Invalid timezone '{value}'. Expected a valid IANA timezone.") from exc
        return

    if key == "default_feed_color":
        if not _HEX_COLOR_PATTERN.fullmatch(value):
            raise ValueError(f"Invalid value for {key}: expected #RRGGBB.")
        return

    if key in _POSITIVE_INT_KEYS:
        parsed = _parse_int(value, key)
        if parsed < 1:
            raise ValueError(f"Invalid value for {key}: must be an integer >= 1.")
        return

    if key in _FLOAT_RANGE_KEYS:
        min_value, max_value = _FLOAT_RANGE_KEYS[key]
        parsed = _parse_float(value, key)
        if parsed < min_value or parsed > max_value:
            raise ValueError(
                f"Invalid value for {key}: must be a float between {min_value} and {max_value}."
            )
        return


def _parse_int(value: str, key: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: must be an integer.") from exc


def _parse_float(value: str, key: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: must be a float.") from exc


def get_setting(session: Session, key: str) -> str:
    """Stored value for ``key``, or its default when unset or invalid."""
    setting = session.get(Settings, key)
    if setting is None:
        return DEFAULT_SETTINGS[key]
    try:
        validate_setting(key, setting.value)
    except ValueError:
        return DEFAULT_SETTINGS[key]
    return setting.value


def get_float_setting(session: Session, key: str) -> float:
    return float(get_setting(session, key))


def get_int_setting(session: Session, key: str) -> int:
    return int(get_setting(session, key))


def list_settings(session: Session) -> list[Settings]:
    return session.exec(select(Settings).order_by(Settings.key)).all()


def upsert_setting(session: Session, key: str, value: str) -> Settings:
    validate_setting(key, value)

    setting = session.get(Settings, key)
    if setting is None:
        setting = Settings(key=key, value=value)
        session.add(setting)
    else:
        setting.value = value

    session.commit()
    session.refresh(setting)
    return setting


def get_user_id() -> str:
    """Owner id for feeds created from this machine (``CALFEED_USER_ID``)."""
    value = os.getenv("CALFEED_USER_ID", "").strip()
    return value or DEFAULT_USER_ID
