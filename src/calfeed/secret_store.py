from __future__ import annotations

import os
import subprocess

DEFAULT_CALDAV_KEYCHAIN_SERVICE = "calfeed.caldav.password"
CALDAV_KEYCHAIN_SERVICE_ENV = "CALFEED_CALDAV_KEYCHAIN_SERVICE"
CALDAV_PASSWORD_ENV = "CALFEED_CALDAV_PASSWORD"


class SecretStoreError(RuntimeError):
    """Raised when a keychain operation fails."""


def resolve_keychain_service() -> str:
    value = os.getenv(CALDAV_KEYCHAIN_SERVICE_ENV, "").strip()
    return value or DEFAULT_CALDAV_KEYCHAIN_SERVICE


def resolve_caldav_password(*, account: str, stored_token: str | None = None) -> str | None:
    """Password for a CalDAV account.

    Order: the token stored on the account row, ``CALFEED_CALDAV_PASSWORD``,
    then the macOS Keychain entry for ``account``.
    """
    if stored_token:
        return stored_token
    env_value = os.getenv(CALDAV_PASSWORD_ENV, "").strip()
    if env_value:
        return env_value
    return keychain_password_lookup(service=resolve_keychain_service(), account=account)


def keychain_password_lookup(*, service: str, account: str) -> str | None:
    service_value = service.strip()
    account_value = account.strip()
    if not service_value or not account_value:
        return None

    try:
        completed = subprocess.run(
            ["security", "find-generic-password", "-s", service_value, "-a", account_value, "-w"],
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return None

    if completed.returncode != 0:
        return None

    value = (completed.stdout or "").strip()
    return value or None


def store_caldav_password(*, account: str, password: str) -> str:
    service = resolve_keychain_service()
    account_value = account.strip()
    if not account_value:
        raise SecretStoreError("Keychain account must not be empty.")
    if not password:
        raise SecretStoreError("Password must not be empty.")

    try:
        completed = subprocess.run(
            ["security", "add-generic-password", "-U", "-s", service, "-a", account_value, "-w", password],
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise SecretStoreError("macOS Keychain CLI is unavailable on this machine.") from exc

    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()
        raise SecretStoreError(
            f"Failed to store secret in Keychain service '{service}' for account '{account_value}'. {stderr}"
        )
    return service
