"""Daily sunrise/sunset window and the day/night classification built on it."""

from __future__ import annotations

import datetime
import json
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from astral import Observer
from astral.sun import sun

from service_log import log_event
from stream_config import SolarSettings
from stream_errors import NetworkFailure, ParseFailure, ScheduleFetchFailure

MINUTES_PER_DAY = 24 * 60

SunTimes = Tuple[datetime.datetime, datetime.datetime]
SunTimesFetcher = Callable[[float, float, datetime.date], SunTimes]


class Mode(Enum):
    DAY = "day"
    NIGHT = "night"


@dataclass(frozen=True)
class SolarWindow:
    """Sunrise/sunset of one local calendar date, as minutes of the day."""

    sunrise_minute: int
    sunset_minute: int
    sunrise_buffer_min: int
    sunset_buffer_min: int
    computed_on: datetime.date
    fallback: bool = False

    def __post_init__(self) -> None:
        for label, value in (("sunrise", self.sunrise_minute), ("sunset", self.sunset_minute)):
            if not 0 <= value < MINUTES_PER_DAY:
                raise ValueError(f"{label} minute out of range: {value}")

    @property
    def day_start(self) -> int:
        return (self.sunrise_minute - self.sunrise_buffer_min) % MINUTES_PER_DAY

    @property
    def day_end(self) -> int:
        return (self.sunset_minute + self.sunset_buffer_min) % MINUTES_PER_DAY

    def describe(self) -> str:
        text = (
            f"sunrise {format_minute(self.sunrise_minute)}, sunset {format_minute(self.sunset_minute)}; "
            f"daytime {format_minute(self.day_start)}-{format_minute(self.day_end)} "
            f"(buffers -{self.sunrise_buffer_min}/+{self.sunset_buffer_min} min) "
            f"for {self.computed_on.isoformat()}"
        )
        if self.fallback:
            text += " [fallback]"
        return text


def format_minute(minute: int) -> str:
    return f"{minute // 60:02d}{minute % 60:02d}"


def minute_of_day(moment: datetime.datetime) -> int:
    return moment.hour * 60 + moment.minute


def classify(now: Union[datetime.datetime, int], window: SolarWindow) -> Mode:
    """Return NIGHT when ``now`` lies outside the buffered daytime window.

    ``now`` is either a local datetime or a minute of the day. When the
    buffered sunrise falls after the buffered sunset the night is only the
    span strictly between them; equal boundaries leave a one-minute day.
    """

    current = now if isinstance(now, int) else minute_of_day(now)
    current %= MINUTES_PER_DAY
    start, end = window.day_start, window.day_end

    if start < end:
        night = current >= end or current < start
    elif start > end:
        night = end < current < start
    else:
        night = current != start
    return Mode.NIGHT if night else Mode.DAY


def _parse_api_timestamp(value: object, field: str) -> datetime.datetime:
    if not isinstance(value, str) or not value:
        raise ParseFailure(f"missing {field} in sun-times payload")
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ParseFailure(f"invalid {field} timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc)


class SunriseSunsetApi:
    """Fetch sun times from the sunrise-sunset.org JSON API."""

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self._base_url = base_url
        self._timeout = timeout

    def build_url(self, latitude: float, longitude: float, date: datetime.date) -> str:
        query = urllib.parse.urlencode(
            {"lat": latitude, "lng": longitude, "date": date.isoformat(), "formatted": 0}
        )
        return f"{self._base_url}?{query}"

    def __call__(self, latitude: float, longitude: float, date: datetime.date) -> SunTimes:
        url = self.build_url(latitude, longitude, date)
        request = urllib.request.Request(url, headers={"Accept": "application/json"})
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise NetworkFailure(f"HTTP {exc.code} from sun-times API") from exc
        except urllib.error.URLError as exc:
            raise NetworkFailure(f"sun-times API unreachable: {exc.reason}") from exc
        except (socket.timeout, OSError) as exc:
            raise NetworkFailure(f"sun-times API request failed: {exc}") from exc

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ParseFailure(f"invalid JSON from sun-times API: {exc}") from exc

        if not isinstance(payload, dict):
            raise ParseFailure("unexpected sun-times payload")
        status = payload.get("status")
        if status is not None and status != "OK":
            raise ParseFailure(f"sun-times API returned status {status!r}")
        results = payload.get("results")
        if not isinstance(results, dict):
            raise ParseFailure("sun-times payload has no results")

        sunrise = _parse_api_timestamp(results.get("sunrise"), "sunrise")
        sunset = _parse_api_timestamp(results.get("sunset"), "sunset")
        return sunrise, sunset


def astral_sun_times(latitude: float, longitude: float, date: datetime.date) -> SunTimes:
    """Compute sun times offline with astral."""

    try:
        times = sun(
            Observer(latitude=latitude, longitude=longitude),
            date=date,
            tzinfo=datetime.timezone.utc,
        )
    except ValueError as exc:
        # Polar day or night: the sun never crosses the horizon.
        raise ParseFailure(f"no sunrise/sunset on {date.isoformat()}: {exc}") from exc
    return times["sunrise"], times["sunset"]


def fetcher_for(settings: SolarSettings) -> SunTimesFetcher:
    if settings.source == "astral":
        return astral_sun_times
    return SunriseSunsetApi(settings.api_url, timeout=settings.api_timeout)


class SolarScheduleProvider:
    """Own today's SolarWindow and refresh it once per local calendar date."""

    def __init__(
        self,
        settings: SolarSettings,
        fetcher: Optional[SunTimesFetcher] = None,
        clock: Callable[[], float] = time.monotonic,
        log_fn: Callable[..., None] = log_event,
    ) -> None:
        self._settings = settings
        self._fetcher = fetcher or fetcher_for(settings)
        self._clock = clock
        self._log = log_fn
        self._tz = ZoneInfo(settings.timezone)
        self._window: Optional[SolarWindow] = None
        self._last_failure_at: Optional[float] = None
        self._last_failure_date: Optional[datetime.date] = None
        self._fallback_logged = False

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    def local_now(self) -> datetime.datetime:
        return datetime.datetime.now(self._tz)

    def current_window(self) -> Optional[SolarWindow]:
        return self._window

    def refresh(self, date: datetime.date) -> SolarWindow:
        """Fetch sun times for ``date``.

        Raises ScheduleFetchFailure and keeps the previous window when the
        collaborator fails.
        """

        settings = self._settings
        url_hint = ""
        if isinstance(self._fetcher, SunriseSunsetApi):
            url_hint = f" from {self._fetcher.build_url(settings.latitude, settings.longitude, date)}"
        self._log("schedule", f"Fetching sun times for {date.isoformat()}{url_hint}")

        try:
            sunrise_utc, sunset_utc = self._fetcher(settings.latitude, settings.longitude, date)
            sunrise_local = sunrise_utc.astimezone(self._tz)
            sunset_local = sunset_utc.astimezone(self._tz)
        except ScheduleFetchFailure:
            self._last_failure_at = self._clock()
            self._last_failure_date = date
            raise
        except (AttributeError, TypeError, ValueError, KeyError) as exc:
            self._last_failure_at = self._clock()
            self._last_failure_date = date
            raise ParseFailure(f"unusable sun times: {exc}") from exc

        window = SolarWindow(
            sunrise_minute=minute_of_day(sunrise_local),
            sunset_minute=minute_of_day(sunset_local),
            sunrise_buffer_min=settings.sunrise_buffer_min,
            sunset_buffer_min=settings.sunset_buffer_min,
            computed_on=date,
        )
        self._window = window
        self._last_failure_at = None
        self._last_failure_date = None
        self._log(
            "schedule",
            f"Today's actual sunrise: {format_minute(window.sunrise_minute)}, "
            f"sunset: {format_minute(window.sunset_minute)} ({settings.timezone})",
        )
        self._log(
            "schedule",
            f"Adjusted daytime period: {format_minute(window.day_start)} to "
            f"{format_minute(window.day_end)}",
        )
        return window

    def _fallback_window(self, date: datetime.date) -> SolarWindow:
        settings = self._settings
        return SolarWindow(
            sunrise_minute=settings.fallback_sunrise_minute,
            sunset_minute=settings.fallback_sunset_minute,
            sunrise_buffer_min=settings.sunrise_buffer_min,
            sunset_buffer_min=settings.sunset_buffer_min,
            computed_on=date,
            fallback=True,
        )

    def _retry_allowed(self, date: datetime.date) -> bool:
        if self._last_failure_at is None or self._last_failure_date != date:
            return True
        return self._clock() - self._last_failure_at >= self._settings.retry_seconds

    def ensure_current(self, today: datetime.date) -> SolarWindow:
        """Return a window for ``today``, refreshing when the date advanced.

        Never raises: on failure the stale window (or the configured fallback
        when none was ever computed) is served and a warning is logged.
        """

        window = self._window
        if window is not None and window.computed_on == today and not window.fallback:
            return window

        if window is not None and not window.fallback and window.computed_on != today:
            self._log("schedule", "New day detected, updating sun times...")

        if self._retry_allowed(today):
            try:
                return self.refresh(today)
            except ScheduleFetchFailure as exc:
                self._log(
                    "schedule",
                    f"Sun-time refresh failed ({exc.__class__.__name__}: {exc}); "
                    f"retrying in {self._settings.retry_seconds:.0f}s",
                    "warning",
                )

        if window is not None and not window.fallback:
            return window

        fallback = self._fallback_window(today)
        if not self._fallback_logged or window is None or window.computed_on != today:
            self._log(
                "schedule",
                f"No sun times available; using fallback window ({fallback.describe()})",
                "warning",
            )
            self._fallback_logged = True
        self._window = fallback
        return fallback

    def classify_now(self, now: Optional[datetime.datetime] = None) -> Tuple[Mode, SolarWindow]:
        if now is None:
            now = self.local_now()
        window = self.ensure_current(now.date())
        return classify(now, window), window
