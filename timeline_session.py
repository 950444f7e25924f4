"""
Headless timeline session: build supersession and frame playback.

A session owns the adopted frame list and a cursor into it. Rebuilds run
the synchronous builder in a worker thread; each call is tagged with a
version and only the most recent call's result is adopted. Playback is a
single asyncio task that advances the cursor and is always cancelled
before a rebuild starts.
"""

import asyncio
from typing import Any, Callable, List, Optional

from repo_timeline import (
    DateRange,
    GitHistoryTimeline,
    Interval,
    MalformedChangeWarning,
    NodeDescriptor,
    TimelineBuild,
    TimelineFrame,
)

MIN_SPEED = 0.1
MAX_SPEED = 10.0
BASE_FRAME_SECONDS = 0.5


def clamp_speed(speed: float) -> float:
    return max(MIN_SPEED, min(MAX_SPEED, float(speed)))


class TimelineSession:
    """
    Frame cursor and playback over the most recently adopted build.

    Every method except `load`, `set_interval` and `dispose` is synchronous
    and O(1); all of them are no-ops when there are no frames. `play` must
    be called from a running event loop.
    """

    def __init__(
        self,
        timeline: GitHistoryTimeline,
        interval: Any = Interval.WEEK,
        speed: float = 1.0,
        base_frame_seconds: float = BASE_FRAME_SECONDS,
        on_frame: Optional[Callable[[int, TimelineFrame], None]] = None,
    ):
        self.timeline = timeline
        self.interval = Interval.parse(interval)
        self.speed = clamp_speed(speed)
        self.base_frame_seconds = base_frame_seconds
        self.on_frame = on_frame

        self.frames: List[TimelineFrame] = []
        self.current_frame = 0
        self.date_range: Optional[DateRange] = None
        self.contributors: List[str] = []
        self.diagnostics: List[MalformedChangeWarning] = []

        self.is_playing = False
        self.is_loading = False
        self._playback_task: Optional[asyncio.Task] = None
        self._build_version = 0
        self._disposed = False

    @property
    def frame_delay(self) -> float:
        return self.base_frame_seconds / self.speed

    @property
    def frame(self) -> Optional[TimelineFrame]:
        if not self.frames:
            return None
        return self.frames[self.current_frame]

    def current_nodes(self) -> List[NodeDescriptor]:
        frame = self.frame
        if frame is None:
            return []
        return self.timeline.frame_to_nodes(frame)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    async def load(self, interval: Any = None) -> bool:
        """
        Rebuild the timeline. Returns True when this call's result was
        adopted, False when a newer call (or dispose) superseded it.
        """
        if interval is not None:
            self.interval = Interval.parse(interval)

        self.stop()
        self._build_version += 1
        version = self._build_version
        self.is_loading = True

        try:
            result = await asyncio.to_thread(self.timeline.build, self.interval)
        except Exception:
            if version != self._build_version:
                return False
            raise
        finally:
            if version == self._build_version:
                self.is_loading = False

        if version != self._build_version or self._disposed:
            return False

        self._adopt(result)
        return True

    async def set_interval(self, interval: Any) -> bool:
        interval = Interval.parse(interval)
        if interval is self.interval and self.frames:
            return False
        return await self.load(interval)

    def _adopt(self, result: TimelineBuild):
        self.frames = list(result.frames)
        self.date_range = result.date_range
        self.contributors = list(result.contributors)
        self.diagnostics = list(result.diagnostics)
        self.current_frame = 0
        self._emit()

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def play(self):
        if self.is_playing or self.is_loading or self._disposed or not self.frames:
            return
        self.is_playing = True
        self._playback_task = asyncio.get_running_loop().create_task(
            self._run_playback()
        )

    def stop(self):
        """Stop playback. Safe to call any number of times."""
        task = self._playback_task
        self._playback_task = None
        self.is_playing = False
        if task is not None and not task.done():
            task.cancel()

    pause = stop

    def toggle(self):
        if self.is_playing:
            self.stop()
        else:
            self.play()

    async def _run_playback(self):
        try:
            while True:
                await asyncio.sleep(self.frame_delay)
                if self.current_frame >= len(self.frames) - 1:
                    break
                self.current_frame += 1
                self._emit()
        finally:
            # A restart may already have installed a newer task
            if self._playback_task is asyncio.current_task():
                self._playback_task = None
                self.is_playing = False

    def set_speed(self, speed: float):
        self.speed = clamp_speed(speed)
        if self.is_playing:
            self.stop()
            self.play()

    # ------------------------------------------------------------------
    # Seeking
    # ------------------------------------------------------------------

    def seek(self, index: int):
        if not self.frames:
            return
        self.current_frame = max(0, min(len(self.frames) - 1, int(index)))
        self._emit()

    def prev(self):
        if self.frames and self.current_frame > 0:
            self.current_frame -= 1
            self._emit()

    def next(self):
        if self.frames and self.current_frame < len(self.frames) - 1:
            self.current_frame += 1
            self._emit()

    def _emit(self):
        if self.on_frame is not None and self.frames:
            self.on_frame(self.current_frame, self.frames[self.current_frame])

    async def dispose(self):
        """Stop playback and discard any in-flight build"""
        self._disposed = True
        self._build_version += 1
        self.is_loading = False
        task = self._playback_task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
