# scheduler.py
import asyncio
import datetime
import enum
import logging
from typing import Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc

TZ_ALIASES = {
    "UTC": "UTC",
    "GMT": "UTC",
    "EST": "America/New_York",
    "EDT": "America/New_York",
    "ET": "America/New_York",
    "NY": "America/New_York",
    "MIA": "America/New_York",
    "CST": "America/Chicago",
    "CDT": "America/Chicago",
    "CT": "America/Chicago",
    "CHI": "America/Chicago",
    "DAL": "America/Chicago",
    "MST": "America/Denver",
    "MDT": "America/Denver",
    "DEN": "America/Denver",
    "PST": "America/Los_Angeles",
    "PDT": "America/Los_Angeles",
    "PT": "America/Los_Angeles",
    "LA": "America/Los_Angeles",
    "HST": "Pacific/Honolulu",
    "AST": "America/Puerto_Rico",
}


class ScheduleState(enum.Enum):
    UNSCHEDULED = "unscheduled"
    ARMED = "armed"
    FIRED = "fired"
    DISABLED = "disabled"


def normalize_tz(raw: Optional[str]) -> Optional[str]:
    """IANA name for an alias or zone name, None if it is not a known zone."""
    if not raw or not str(raw).strip():
        return "UTC"
    text = str(raw).strip()
    name = TZ_ALIASES.get(text.upper(), text)
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None
    return name


def resolve_zone(raw: Optional[str]) -> ZoneInfo:
    name = normalize_tz(raw)
    if name is None:
        logger.warning(f"Unknown timezone {raw!r}, falling back to UTC")
        return ZoneInfo("UTC")
    return ZoneInfo(name)


def next_fire_time(now_utc: datetime.datetime, tz: Optional[str], hour: int, minute: int) -> datetime.datetime:
    """Next hour:minute in `tz` strictly after now, as a UTC datetime."""
    zone = resolve_zone(tz)
    local_now = now_utc.astimezone(zone)
    candidate = datetime.datetime.combine(local_now.date(), datetime.time(hour, minute), tzinfo=zone)
    if candidate <= local_now:
        candidate = datetime.datetime.combine(local_now.date() + datetime.timedelta(days=1), datetime.time(hour, minute), tzinfo=zone)
    return candidate.astimezone(UTC)


def previous_fire_time(now_utc: datetime.datetime, tz: Optional[str], hour: int, minute: int) -> datetime.datetime:
    zone = resolve_zone(tz)
    local_now = now_utc.astimezone(zone)
    candidate = datetime.datetime.combine(local_now.date(), datetime.time(hour, minute), tzinfo=zone)
    if candidate > local_now:
        candidate = datetime.datetime.combine(local_now.date() - datetime.timedelta(days=1), datetime.time(hour, minute), tzinfo=zone)
    return candidate.astimezone(UTC)


def make_run_key(guild_id: str, fire_at_utc: datetime.datetime, tz: Optional[str]) -> str:
    zone = resolve_zone(tz)
    local = fire_at_utc.astimezone(zone)
    return f"{guild_id}:{local:%Y-%m-%d}:{local:%H}:{local:%M}:{zone.key}"


class DigestScheduler:
    """
    One timer task per guild with the digest enabled. After each fire the
    task re-arms for the next local day. `reschedule_guild` always cancels
    the current timer before arming a new one.
    """

    def __init__(
        self,
        load_settings: Callable[[str], Awaitable],
        load_enabled: Callable[[], Awaitable[List]],
        fire: Callable[..., Awaitable],
        claim: Optional[Callable[[str, str], Awaitable[bool]]] = None,
        catchup_minutes: int = 10,
        clock: Optional[Callable[[], datetime.datetime]] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.load_settings = load_settings
        self.load_enabled = load_enabled
        self.fire = fire
        self.claim = claim
        self.catchup = datetime.timedelta(minutes=catchup_minutes)
        self.clock = clock or (lambda: datetime.datetime.now(UTC))
        self.sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, ScheduleState] = {}

    def state(self, guild_id: str) -> ScheduleState:
        return self._states.get(str(guild_id), ScheduleState.UNSCHEDULED)

    def task_for(self, guild_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(str(guild_id))

    def armed_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def start(self) -> None:
        settings_list = await self.load_enabled()
        for settings in settings_list:
            self._arm(settings, catchup=True)
        logger.info(f"Digest scheduler started with {len(settings_list)} guild(s).")

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def reschedule_guild(self, guild_id: str) -> ScheduleState:
        guild_id = str(guild_id)
        self._cancel(guild_id)
        settings = await self.load_settings(guild_id)
        if settings is None or not settings.enabled:
            # a concurrent reschedule may have armed meanwhile
            self._cancel(guild_id)
            self._states[guild_id] = ScheduleState.DISABLED
            logger.info(f"Digest disabled for guild {guild_id}.")
            return ScheduleState.DISABLED
        self._arm(settings)
        return ScheduleState.ARMED

    async def run_now(self, guild_id: str) -> bool:
        """Posts the digest immediately, ignoring the schedule and the run claim."""
        settings = await self.load_settings(str(guild_id))
        if settings is None:
            return False
        await self.fire(settings, forced=True)
        return True

    def _cancel(self, guild_id: str) -> None:
        task = self._tasks.pop(guild_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _arm(self, settings, catchup: bool = False) -> None:
        guild_id = str(settings.guild_id)
        self._cancel(guild_id)
        self._tasks[guild_id] = asyncio.create_task(self._run(settings, catchup))
        self._states[guild_id] = ScheduleState.ARMED

    async def _run(self, settings, catchup: bool) -> None:
        guild_id = str(settings.guild_id)
        if catchup:
            now = self.clock()
            missed = previous_fire_time(now, settings.tz, settings.hour, settings.minute)
            if now - missed < self.catchup:
                logger.info(f"Catch-up digest for guild {guild_id} (scheduled {missed.isoformat()}).")
                await self._fire_scheduled(settings, missed)

        last_target = None
        while True:
            now = self.clock()
            # the wall clock can lag the loop timer; never re-fire the same slot
            if last_target is not None and now < last_target:
                now = last_target
            target = next_fire_time(now, settings.tz, settings.hour, settings.minute)
            self._states[guild_id] = ScheduleState.ARMED
            logger.info(f"Digest for guild {guild_id} armed for {target.isoformat()}.")
            await self.sleep(max(0.0, (target - self.clock()).total_seconds()))
            await self._fire_scheduled(settings, target)
            last_target = target

    async def _fire_scheduled(self, settings, fire_at: datetime.datetime) -> None:
        guild_id = str(settings.guild_id)
        key = make_run_key(guild_id, fire_at, settings.tz)
        try:
            if self.claim is not None and not await self.claim(key, guild_id):
                logger.info(f"Digest run {key} already claimed, skipping.")
                return
            await self.fire(settings, forced=False)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Digest fire failed for guild {guild_id}: {e}", exc_info=True)
        finally:
            self._states[guild_id] = ScheduleState.FIRED
