"""Cast session lifecycle.

CastSessionManager owns the single CastState and drives whichever protocol a
device speaks. All session work runs as coroutines on one background asyncio
loop; blocking socket work is pushed to the loop's default executor. The
resources of every start attempt hang off an `_Attempt` so a failed,
cancelled or lost session can always be torn down completely.
"""

import asyncio
import functools
import logging
import threading
from typing import Callable, List, Optional

from screencast.avtransport import AVTransportController
from screencast.cast_v2 import CastV2Session
from screencast.config import config_value
from screencast.errors import CastConnectionError, CastError, PlaybackError
from screencast.external import FrameSource, NullWiFiDirectLink, WiFiDirectLink
from screencast.miracast import MiracastSource
from screencast.models import CastState, Casting, Connecting, Device, DeviceType, Error, Idle, is_active
from screencast.relay import StreamingRelay

LOG = logging.getLogger(__name__)

LOST_CONNECTION = "Lost connection to device"

StateListener = Callable[[CastState], None]


class _Attempt:
    """Everything acquired on behalf of one start_casting call."""

    def __init__(self, device: Device):
        self.device = device
        self.cancelled = False
        self.frame_source: Optional[FrameSource] = None
        self.relay: Optional[StreamingRelay] = None
        self.controller: Optional[AVTransportController] = None
        self.cast_session: Optional[CastV2Session] = None
        self.miracast: Optional[MiracastSource] = None
        self.wifi_connected = False
        self.pump: Optional[threading.Thread] = None
        self.tasks: List[asyncio.Task] = []


class CastSessionManager:
    """Starts, watches and stops one cast session at a time."""

    def __init__(self, config=None, capture: Optional[FrameSource] = None,
                 wifi_direct: Optional[WiFiDirectLink] = None,
                 relay_factory: Optional[Callable[[], StreamingRelay]] = None,
                 avtransport_factory: Optional[Callable[[Device], AVTransportController]] = None,
                 cast_session_factory: Optional[Callable[[], CastV2Session]] = None,
                 miracast_factory: Optional[Callable[[], MiracastSource]] = None):
        self.config = config
        self.capture = capture
        self.wifi_direct = wifi_direct or NullWiFiDirectLink()
        self.relay_factory = relay_factory or (lambda: StreamingRelay(config))
        self.avtransport_factory = avtransport_factory or (lambda device: AVTransportController(device, config))
        self.cast_session_factory = cast_session_factory or (lambda: CastV2Session(config))
        self.miracast_factory = miracast_factory or (lambda: MiracastSource(config))

        self.dlna_settle_seconds = float(config_value(config, "dlna_settle_seconds"))
        self.miracast_settle_seconds = float(config_value(config, "miracast_link_settle_seconds"))
        self.monitor_interval = float(config_value(config, "monitor_interval"))
        self.monitor_max_failures = int(config_value(config, "monitor_max_failures"))
        self.heartbeat_interval = float(config_value(config, "cast_heartbeat_interval"))

        self._state: CastState = Idle()
        self._state_lock = threading.Lock()
        self._attempt: Optional[_Attempt] = None
        self._listeners: List[StateListener] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    # --- Background loop ---

    def start(self):
        """Start the background asyncio loop."""
        if self._running:
            return
        self._running = True
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="CastSessionLoop")
        self._thread.start()

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def shutdown(self):
        """Stop any session and the background loop."""
        if not self._running:
            return
        try:
            self.dispatch(self.stop_casting_async())
        except Exception as e:
            LOG.warning("Error stopping session during shutdown: %s", e)
        self._running = False
        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread and not self._on_loop_thread():
            self._thread.join(timeout=2.0)

    def _on_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def dispatch(self, coro):
        """Run a coroutine on the background loop and return the result synchronously.

        On the loop thread itself (a state listener calling back in) the
        coroutine is only scheduled and its Task is returned.
        """
        if not self._running or not self._loop:
            coro.close()
            raise RuntimeError("CastSessionManager is not running. Call start() first.")
        if self._on_loop_thread():
            return self._loop.create_task(coro)
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    # --- State ---

    @property
    def state(self) -> CastState:
        with self._state_lock:
            return self._state

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, state: CastState) -> None:
        LOG.info("Cast state: %s", state)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                LOG.warning("State listener failed: %s", e)

    def _transition(self, attempt: _Attempt, state: CastState) -> bool:
        """Move to `state` only while `attempt` still owns the session."""
        with self._state_lock:
            if self._attempt is not attempt:
                return False
            self._state = state
            if not is_active(state):
                self._attempt = None
        self._notify(state)
        return True

    # --- Public API ---

    def start_casting(self, device: Device) -> bool:
        """Start a session and wait for its outcome.

        From a state listener the attempt is only scheduled: False is returned
        and the outcome arrives as further state changes.
        """
        self.start()
        if self._on_loop_thread():
            self.dispatch(self.start_casting_async(device))
            return False
        return self.dispatch(self.start_casting_async(device))

    def stop_casting(self) -> None:
        if not self._running:
            with self._state_lock:
                self._state = Idle()
            return
        self.dispatch(self.stop_casting_async())

    async def start_casting_async(self, device: Device) -> bool:
        attempt = _Attempt(device)
        with self._state_lock:
            if is_active(self._state):
                LOG.warning("Already casting; ignoring start request for %s", device.name)
                return False
            self._state = Connecting(device)
            self._attempt = attempt
        self._notify(Connecting(device))

        try:
            stream_url = await self._establish(attempt)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            LOG.warning("Casting to %s failed: %s", device.name, message)
            await self._teardown(attempt)
            self._transition(attempt, Error(message))
            return False

        if not self._transition(attempt, Casting(device, stream_url)):
            LOG.info("Session for %s was stopped while connecting", device.name)
            await self._teardown(attempt)
            return False
        self._start_monitor(attempt)
        LOG.info("Casting to %s at %s", device.name, stream_url)
        return True

    async def stop_casting_async(self) -> None:
        with self._state_lock:
            attempt, self._attempt = self._attempt, None
            changed = not isinstance(self._state, Idle)
            self._state = Idle()
        if attempt is not None:
            await self._teardown(attempt)
        if changed:
            self._notify(Idle())

    # --- Session setup ---

    async def _run_blocking(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _checkpoint(self, attempt: _Attempt) -> None:
        if attempt.cancelled:
            raise CastError("Casting cancelled")

    async def _establish(self, attempt: _Attempt) -> str:
        device_type = attempt.device.type
        if device_type == DeviceType.DLNA:
            return await self._start_dlna(attempt)
        if device_type == DeviceType.CHROMECAST:
            return await self._start_chromecast(attempt)
        if device_type == DeviceType.MIRACAST:
            return await self._start_miracast(attempt)
        raise CastError(f"Unsupported device type: {device_type.value}")

    async def _start_capture(self, attempt: _Attempt):
        if self.capture is None:
            raise CastError("No screen capture available")
        attempt.frame_source = self.capture
        return await self._run_blocking(self.capture.start)

    async def _start_relay(self, attempt: _Attempt) -> str:
        frames = await self._start_capture(attempt)
        self._checkpoint(attempt)
        relay = self.relay_factory()
        attempt.relay = relay
        if not await self._run_blocking(relay.start):
            raise CastConnectionError("Could not start streaming server")
        relay.set_frame_source(frames)
        return relay.get_stream_url()

    async def _start_dlna(self, attempt: _Attempt) -> str:
        device = attempt.device
        stream_url = await self._start_relay(attempt)
        self._checkpoint(attempt)

        controller = self.avtransport_factory(device)
        attempt.controller = controller
        if not await self._run_blocking(controller.set_av_transport_uri, stream_url, "Screen Cast"):
            raise PlaybackError(f"{device.name} rejected the stream URL")
        await asyncio.sleep(self.dlna_settle_seconds)
        self._checkpoint(attempt)
        if not await self._run_blocking(controller.play):
            raise PlaybackError(f"{device.name} did not start playback")
        return stream_url

    async def _start_chromecast(self, attempt: _Attempt) -> str:
        device = attempt.device
        stream_url = await self._start_relay(attempt)
        self._checkpoint(attempt)

        session = self.cast_session_factory()
        attempt.cast_session = session
        if not await self._run_blocking(session.connect, device.address):
            raise CastConnectionError(f"Could not connect to {device.name}")
        self._checkpoint(attempt)
        attempt.tasks.append(asyncio.ensure_future(self._heartbeat(attempt, session)))
        if not await self._run_blocking(session.start_casting, stream_url):
            raise PlaybackError(f"{device.name} did not start playback")
        return stream_url

    async def _start_miracast(self, attempt: _Attempt) -> str:
        device = attempt.device
        if not await self._run_blocking(self.wifi_direct.connect, device.address):
            raise CastConnectionError(f"WiFi-Direct connection to {device.name} failed")
        attempt.wifi_connected = True
        await asyncio.sleep(self.miracast_settle_seconds)
        self._checkpoint(attempt)

        frames = await self._start_capture(attempt)
        self._checkpoint(attempt)
        source = self.miracast_factory()
        attempt.miracast = source
        if not await self._run_blocking(source.start):
            raise CastConnectionError("Could not start Miracast session")
        # The pump blocks on the frame sequence; it ends once the source stops.
        attempt.pump = threading.Thread(target=source.stream_frames, args=(frames,), name="miracast-pump", daemon=True)
        attempt.pump.start()
        return f"miracast://{device.address}"

    # --- Liveness ---

    def _start_monitor(self, attempt: _Attempt) -> None:
        if attempt.controller is not None:
            attempt.tasks.append(asyncio.ensure_future(self._monitor_dlna(attempt, attempt.controller)))
        # Cast v2 is watched by its heartbeat task; Miracast link health belongs to WiFi-Direct.

    async def _monitor_dlna(self, attempt: _Attempt, controller: AVTransportController) -> None:
        failures = 0
        last_state = None
        while not attempt.cancelled:
            await asyncio.sleep(self.monitor_interval)
            info = await self._run_blocking(controller.get_transport_info)
            if info is None:
                failures += 1
                LOG.debug("No transport info from %s (%d/%d)",
                          attempt.device.name, failures, self.monitor_max_failures)
                if failures >= self.monitor_max_failures:
                    await self._lost(attempt)
                    return
                continue
            failures = 0
            if info.state != last_state:
                LOG.debug("%s transport state: %s", attempt.device.name, info.state.value)
                last_state = info.state

    async def _heartbeat(self, attempt: _Attempt, session: CastV2Session) -> None:
        while not attempt.cancelled:
            await asyncio.sleep(self.heartbeat_interval)
            ok = await self._run_blocking(session.send_heartbeat)
            if not ok or not session.is_connected():
                await self._lost(attempt)
                return

    async def _lost(self, attempt: _Attempt) -> None:
        with self._state_lock:
            if self._attempt is not attempt:
                return
        LOG.warning("%s: %s", LOST_CONNECTION, attempt.device.name)
        await self._teardown(attempt)
        self._transition(attempt, Error(LOST_CONNECTION))

    # --- Teardown ---

    async def _quietly(self, label: str, fn, *args) -> None:
        try:
            await self._run_blocking(fn, *args)
        except Exception as e:
            LOG.debug("%s failed during teardown: %s", label, e)

    async def _teardown(self, attempt: _Attempt) -> None:
        """Release everything `attempt` acquired, newest first. Safe to repeat."""
        attempt.cancelled = True
        current = asyncio.current_task()
        tasks, attempt.tasks = attempt.tasks, []
        for task in tasks:
            if task is not current:
                task.cancel()

        cast_session, attempt.cast_session = attempt.cast_session, None
        if cast_session is not None:
            await self._quietly("Cast stop", cast_session.stop_casting)
            await self._quietly("Cast disconnect", cast_session.disconnect)

        controller, attempt.controller = attempt.controller, None
        if controller is not None:
            await self._quietly("DLNA stop", controller.stop)

        miracast, attempt.miracast = attempt.miracast, None
        if miracast is not None:
            await self._quietly("Miracast stop", miracast.stop)

        relay, attempt.relay = attempt.relay, None
        if relay is not None:
            await self._quietly("Relay stop", relay.stop)

        frame_source, attempt.frame_source = attempt.frame_source, None
        if frame_source is not None:
            await self._quietly("Capture release", frame_source.release)

        pump, attempt.pump = attempt.pump, None
        if pump is not None:
            await self._run_blocking(pump.join, 1.0)
            if pump.is_alive():
                LOG.debug("Miracast pump still running after teardown")

        if attempt.wifi_connected:
            attempt.wifi_connected = False
            await self._quietly("WiFi-Direct disconnect", self.wifi_direct.disconnect)
