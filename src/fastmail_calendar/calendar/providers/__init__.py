"""Protocol clients behind the :class:`CalendarProvider` contract."""

from __future__ import annotations

import httpx

from fastmail_calendar.calendar.providers.base import (
    CalendarListCache,
    CalendarProvider,
    safe_error_message,
)
from fastmail_calendar.calendar.providers.caldav import CalDavProvider
from fastmail_calendar.calendar.providers.jmap import JmapProvider
from fastmail_calendar.config import CalendarConfig, ConfigError, Protocol


def build_provider(
    config: CalendarConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> CalendarProvider:
    """Instantiate the provider selected by ``config.protocol``."""
    cache = CalendarListCache(config.calendar_cache_ttl_seconds)
    common = {
        "default_time_zone": config.timezone,
        "http_client": http_client,
        "calendar_cache": cache,
        "request_timeout_seconds": config.request_timeout_seconds,
    }
    if config.protocol == Protocol.jmap:
        if config.jmap is None:
            raise ConfigError("[calendar.jmap] section is required for the jmap protocol")
        return JmapProvider(
            token=config.jmap.token,
            session_url=config.jmap.session_url,
            **common,
        )
    if config.caldav is None:
        raise ConfigError("[calendar.caldav] section is required for the caldav protocol")
    return CalDavProvider(
        username=config.caldav.username,
        password=config.caldav.password,
        server_url=config.caldav.server_url,
        **common,
    )


__all__ = [
    "CalDavProvider",
    "CalendarListCache",
    "CalendarProvider",
    "JmapProvider",
    "build_provider",
    "safe_error_message",
]
