"""Byte conduit between the capture process and the long-lived publisher."""

from __future__ import annotations

import os
import select
import threading
import time
from typing import IO, Callable, Optional

from service_log import log_event
from stream_errors import ChannelCreationFailure

READ_CHUNK = 64 * 1024


class DataChannel:
    """One OS pipe, created fresh for every capture attempt."""

    _counter = 0
    _counter_lock = threading.Lock()

    def __init__(self, read_fd: int, write_fd: int) -> None:
        with DataChannel._counter_lock:
            DataChannel._counter += 1
            self.channel_id = DataChannel._counter
        self._read_fd: Optional[int] = read_fd
        self._write_fd: Optional[int] = write_fd
        self._lock = threading.Lock()

    @classmethod
    def create(cls) -> "DataChannel":
        try:
            read_fd, write_fd = os.pipe()
        except OSError as exc:
            raise ChannelCreationFailure(f"could not create data channel: {exc}") from exc
        return cls(read_fd, write_fd)

    def __repr__(self) -> str:
        return f"DataChannel(id={self.channel_id}, read={self._read_fd}, write={self._write_fd})"

    @property
    def read_fd(self) -> Optional[int]:
        return self._read_fd

    @property
    def write_fd(self) -> Optional[int]:
        return self._write_fd

    @property
    def closed(self) -> bool:
        return self._read_fd is None and self._write_fd is None

    def close_writer(self) -> None:
        """Drop this process's copy of the write end.

        Called right after the capture process inherited it, so the reader
        sees end-of-stream once capture exits.
        """

        with self._lock:
            fd, self._write_fd = self._write_fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

    def close_reader(self) -> None:
        with self._lock:
            fd, self._read_fd = self._read_fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

    def close(self) -> None:
        self.close_writer()
        self.close_reader()


class ChannelRelay:
    """Copy bytes from the current DataChannel into the publisher's stdin.

    The relay lives for a whole session. A capture-only restart attaches a
    replacement channel; the retired one is closed by the relay thread.
    Bytes read before a sink is set are discarded so capture never blocks
    on a full pipe while it warms up. Writes to the sink are non-blocking
    and polled, so a stalled publisher cannot pin the relay thread.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        log_fn: Callable[..., None] = log_event,
        poll_interval: float = 0.2,
    ) -> None:
        self._clock = clock
        self._log = log_fn
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._channel: Optional[DataChannel] = None
        self._retired: list[DataChannel] = []
        self._sink: Optional[IO[bytes]] = None
        self._sink_broken = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._bytes_relayed = 0
        self._bytes_discarded = 0
        self._last_data_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return bool(thread and thread.is_alive())

    @property
    def bytes_relayed(self) -> int:
        return self._bytes_relayed

    @property
    def bytes_discarded(self) -> int:
        return self._bytes_discarded

    @property
    def sink_broken(self) -> bool:
        return self._sink_broken

    @property
    def current_channel(self) -> Optional[DataChannel]:
        return self._channel

    def seconds_since_data(self) -> Optional[float]:
        last = self._last_data_at
        if last is None:
            return None
        return max(self._clock() - last, 0.0)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        thread = threading.Thread(target=self._run_loop, name="ChannelRelay", daemon=True)
        self._thread = thread
        thread.start()

    def attach(self, channel: DataChannel) -> None:
        with self._lock:
            previous = self._channel
            self._channel = channel
            if previous is not None and previous is not channel:
                self._retired.append(previous)
        self._log("channel", f"Relay attached to channel {channel.channel_id}")
        if not self.is_running:
            self._close_retired()

    def set_sink(self, sink: Optional[IO[bytes]]) -> None:
        if sink is not None:
            # _forward writes the raw descriptor.
            os.set_blocking(sink.fileno(), False)
        with self._lock:
            self._sink = sink
            self._sink_broken = False

    def stop(self, timeout: Optional[float] = 5.0, close_sink: bool = True) -> None:
        thread = self._thread
        self._stop_event.set()
        if thread is not None:
            if timeout is not None:
                thread.join(timeout=timeout)
            else:
                thread.join()
            if thread.is_alive():
                self._log("channel", "Relay thread did not stop within timeout", "warning")
        self._thread = None

        with self._lock:
            sink, self._sink = self._sink, None
            channel, self._channel = self._channel, None
            if channel is not None:
                self._retired.append(channel)
        self._close_retired()

        if close_sink and sink is not None:
            try:
                sink.close()
            except (OSError, ValueError):
                pass

    def _close_retired(self) -> None:
        with self._lock:
            retired, self._retired = self._retired, []
        for channel in retired:
            channel.close_reader()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._close_retired()
            with self._lock:
                channel = self._channel
            fd = channel.read_fd if channel is not None else None
            if fd is None:
                self._stop_event.wait(self._poll_interval)
                continue

            try:
                ready, _, _ = select.select([fd], [], [], self._poll_interval)
            except (OSError, ValueError):
                # The channel was swapped and closed under us.
                continue
            if not ready:
                continue

            try:
                chunk = os.read(fd, READ_CHUNK)
            except OSError:
                continue

            if not chunk:
                # Writer gone; wait for the supervisor to attach a new channel.
                with self._lock:
                    if self._channel is channel:
                        self._channel = None
                        self._retired.append(channel)
                continue

            self._forward(chunk)

    def _forward(self, chunk: bytes) -> None:
        with self._lock:
            sink = self._sink
            broken = self._sink_broken
        if sink is None or broken:
            self._bytes_discarded += len(chunk)
            return

        pending = memoryview(chunk)
        try:
            fd = sink.fileno()
            while pending:
                if self._stop_event.is_set():
                    self._bytes_discarded += len(pending)
                    return
                _, writable, _ = select.select([], [fd], [], self._poll_interval)
                if not writable:
                    continue
                try:
                    written = os.write(fd, pending)
                except BlockingIOError:
                    continue
                pending = pending[written:]
                self._bytes_relayed += written
                self._last_data_at = self._clock()
        except (OSError, ValueError) as exc:
            with self._lock:
                self._sink_broken = True
            self._log("channel", f"Publisher input closed ({exc}); dropping data", "warning")
            self._bytes_discarded += len(pending)
