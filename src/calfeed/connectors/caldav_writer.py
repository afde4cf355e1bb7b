from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import caldav
from caldav.lib.error import DAVError

from calfeed.connectors.caldav import CalDavClient
from calfeed.errors import RemoteFetchError, RemoteMutationError

logger = logging.getLogger(__name__)

_ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"


def _default_dav_client_factory(client: CalDavClient) -> caldav.DAVClient:
    return caldav.DAVClient(
        url=client.base_url,
        username=client.username,
        password=client.password,
        timeout=int(client.timeout_sec),
    )


@dataclass(frozen=True)
class CalDavEventWriter:
    """Writes calendar objects to ``{collection}/{uid}.ics``.

    Servers that refuse direct addressing get a second attempt through the
    ``caldav`` library's object API, which locates resources by UID.
    """

    client: CalDavClient
    dav_client_factory: Callable[[CalDavClient], caldav.DAVClient] = _default_dav_client_factory

    def put_event(self, uid: str, ical_text: str, *, create: bool) -> None:
        url = self.client.object_url(uid)
        extra_headers = {"If-None-Match": "*"} if create else None
        try:
            self.client.request(
                url,
                method="PUT",
                body=ical_text,
                content_type=_ICS_CONTENT_TYPE,
                extra_headers=extra_headers,
            )
        except RemoteFetchError as exc:
            if exc.status_code is None:
                raise RemoteMutationError(str(exc)) from None
            logger.warning("caldav_put_rejected uid=%s status=%s fallback=object_api", uid, exc.status_code)
            if create:
                self._with_fallback("create", uid, lambda calendar: calendar.save_event(ical_text))
            else:
                self._with_fallback("update", uid, lambda calendar: _replace_object(calendar, uid, ical_text))
        logger.info("caldav_event_written uid=%s create=%s", uid, create)

    def delete_event(self, uid: str) -> None:
        url = self.client.object_url(uid)
        try:
            self.client.request(url, method="DELETE")
        except RemoteFetchError as exc:
            if exc.status_code is None:
                raise RemoteMutationError(str(exc)) from None
            logger.warning("caldav_delete_rejected uid=%s status=%s fallback=object_api", uid, exc.status_code)
            self._with_fallback("delete", uid, lambda calendar: calendar.event_by_uid(uid).delete())
        logger.info("caldav_event_deleted uid=%s", uid)

    def get_event(self, uid: str) -> str:
        """Raw calendar object of ``uid`` (master plus any overrides)."""
        url = self.client.object_url(uid)
        try:
            response = self.client.request(url, method="GET")
        except RemoteFetchError as exc:
            if exc.status_code is None:
                raise RemoteMutationError(str(exc)) from None
            logger.warning("caldav_get_rejected uid=%s status=%s fallback=object_api", uid, exc.status_code)
            return self._with_fallback("get", uid, lambda calendar: _object_data(calendar, uid))
        return response.body.decode("utf-8", errors="replace")

    def _with_fallback(self, action: str, uid: str, operation):
        try:
            dav_client = self.dav_client_factory(self.client)
            calendar = dav_client.calendar(url=self.client.collection_url)
            return operation(calendar)
        except DAVError as exc:
            logger.error("caldav_fallback_failed action=%s uid=%s error=%s", action, uid, type(exc).__name__)
            raise RemoteMutationError(f"CalDAV {action} failed for event {uid}.") from None
        except OSError as exc:
            # requests and niquests transport errors derive from OSError.
            logger.error("caldav_fallback_unreachable action=%s uid=%s error=%s", action, uid, type(exc).__name__)
            raise RemoteMutationError(f"CalDAV {action} failed for event {uid}: endpoint is unreachable.") from None


def _replace_object(calendar, uid: str, ical_text: str) -> None:
    event = calendar.event_by_uid(uid)
    event.data = ical_text
    event.save()


def _object_data(calendar, uid: str) -> str:
    data = calendar.event_by_uid(uid).data
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
