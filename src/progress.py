"""
Terminal progress output: prepare event rendering and the cleanup spinner.
"""

import threading
from typing import Callable, IO, Optional

from models import PrepareJobEvent

SPINNER_GLYPHS = ("-", "\\", "|", "/")


def _stream_isatty(stream: IO) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except ValueError:
        # closed stream
        return False


def clear_line(stream: IO, width: int) -> None:
    """Overwrite the current terminal line with blanks and return the cursor."""
    width = max(width, 1)
    stream.write("\r" + " " * width + "\r")
    stream.flush()


def format_prepare_event(event: PrepareJobEvent) -> str:
    """Render one prepare event as a human readable line."""
    message = event.message.strip()
    if not message and event.error is not None:
        parts = [p.strip() for p in (event.error.message, event.error.details or "")]
        message = ": ".join(p for p in parts if p)
    suffix = f" - {message}" if message else ""

    if event.type == "status":
        if event.status:
            return f"prepare status: {event.status}{suffix}"
        return "prepare status" + suffix
    if event.type == "task":
        if event.task_id and event.status:
            return f"prepare task {event.task_id}: {event.status}{suffix}"
        if event.task_id:
            return f"prepare task {event.task_id}{suffix}"
        if event.status:
            return f"prepare task: {event.status}{suffix}"
        return "prepare task" + suffix
    if event.type == "result":
        return "prepare result: ready"
    if event.type == "error":
        if event.error is not None and event.error.message:
            if event.error.details:
                return f"prepare error: {event.error.message}: {event.error.details}"
            return f"prepare error: {event.error.message}"
        return "prepare error"
    if message:
        return f"prepare {event.type}: {message}"
    return f"prepare {event.type}"


class PrepareProgress:
    """
    Renders prepare job events.

    On a terminal the status is kept on one rewritten line and repeated
    events advance a glyph; otherwise one line is printed per change. In
    verbose mode every event gets its own line.
    """

    def __init__(self, stream: IO, verbose: bool = False, isatty: Optional[bool] = None):
        self.stream = stream
        self.verbose = verbose
        self.interactive = _stream_isatty(stream) if isatty is None else isatty
        self._last_key = None
        self._last_width = 0
        self._glyph = 0
        self._painted = False

    def update(self, event: PrepareJobEvent) -> None:
        line = format_prepare_event(event)
        if self.verbose:
            self.stream.write(line + "\n")
            self.stream.flush()
            return

        key = (event.type, event.status, event.task_id, event.message)
        if key == self._last_key:
            if not self.interactive:
                return
            self._glyph = (self._glyph + 1) % len(SPINNER_GLYPHS)
            line = f"{line} {SPINNER_GLYPHS[self._glyph]}"
        else:
            self._last_key = key
            self._glyph = 0

        if not self.interactive:
            self.stream.write(line + "\n")
            self.stream.flush()
            return

        padding = max(self._last_width - len(line), 0)
        prefix = "\r" if self._painted else ""
        self.stream.write(prefix + line + " " * padding)
        self.stream.flush()
        self._last_width = len(line)
        self._painted = True

    def close(self) -> None:
        """Terminate the rewritten line so later output starts clean."""
        if self._painted:
            self.stream.write("\n")
            self.stream.flush()
            self._painted = False


class CleanupSpinner:
    """
    Shows ``<label> <glyph>`` while a cleanup call is in flight.

    The animation starts only after a grace delay so fast cleanups leave no
    trace. The worker thread listens to two one-shot events: ``done`` ends it
    and ``painted`` records that something reached the terminal. ``stop``
    returns only after the line has been erased.

    Usage:
        with CleanupSpinner(f"Deleting instance {iid}", sys.stderr):
            api.delete_instance(iid)
    """

    def __init__(
        self,
        label: str,
        stream: IO,
        verbose: bool = False,
        isatty: Optional[bool] = None,
        grace: float = 0.5,
        tick: float = 0.15,
        thread_factory: Callable[..., threading.Thread] = threading.Thread,
    ):
        self.label = label
        self.stream = stream
        self.verbose = verbose
        self.interactive = _stream_isatty(stream) if isatty is None else isatty
        self.grace = grace
        self.tick = tick
        self.done = threading.Event()
        self.painted = threading.Event()
        self._thread_factory = thread_factory
        self._thread: Optional[threading.Thread] = None
        self._width = len(label) + 2

    def start(self) -> None:
        if self.verbose or not self.interactive:
            self.stream.write(self.label + "\n")
            self.stream.flush()
            return
        self._thread = self._thread_factory(
            target=self._spin, name="cleanup-spinner", daemon=True
        )
        self._thread.start()

    def _spin(self) -> None:
        if self.done.wait(self.grace):
            return
        index = 0
        while True:
            clear_line(self.stream, self._width)
            self.stream.write(f"{self.label} {SPINNER_GLYPHS[index]}")
            self.stream.flush()
            self.painted.set()
            index = (index + 1) % len(SPINNER_GLYPHS)
            if self.done.wait(self.tick):
                break
        clear_line(self.stream, self._width)

    def stop(self) -> None:
        """Stop the animation and wait until the line is erased."""
        self.done.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self) -> "CleanupSpinner":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
