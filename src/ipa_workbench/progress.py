"""Progress reporting for long-running archive operations.

All progress state changes are applied by a single dispatcher thread, the
one update context observers can rely on. Background work reports through
``update()`` or a ``ProgressHandle`` from any thread; those calls only enqueue
commands.

Architecture:
- Command queue fed by any thread
- Single dispatcher thread applying commands and notifying observers
- Episode numbers: every ``show()``/``begin()`` starts a new episode; a handle
  bound to an older episode can no longer change the bar
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from queue import Empty, Queue
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Observer = Callable[["ProgressState"], None]

_SHOW = "show"
_UPDATE = "update"
_COMPLETE = "complete"


@dataclass(frozen=True)
class ProgressState:
    """Snapshot of the progress indicator.
    
    Attributes:
        operation_name: Label of the operation being shown
        fraction: Completion in [0, 1]
        visible: Whether the indicator is shown
        episode: Number of the show() call this state belongs to (0 = never shown)
    """
    operation_name: str = ""
    fraction: float = 0.0
    visible: bool = False
    episode: int = 0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


class ProgressHandle:
    """Per-job view of the coordinator.
    
    Updates from a handle apply only while its episode is the one on screen,
    so a job that was superseded by a newer ``show()`` cannot move the newer
    job's bar. Leaving the handle's ``with`` block always completes it.
    """
    
    def __init__(self, coordinator: "ProgressCoordinator", episode: int, operation_name: str):
        self.coordinator = coordinator
        self.episode = episode
        self.operation_name = operation_name
    
    def update(self, value: float) -> None:
        self.coordinator._enqueue(_UPDATE, self.episode, value)
    
    def complete(self) -> None:
        self.coordinator._enqueue(_COMPLETE, self.episode, None)
    
    @property
    def is_current(self) -> bool:
        state = self.coordinator.state
        return state.visible and state.episode == self.episode
    
    def __enter__(self) -> "ProgressHandle":
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.complete()
    
    def __repr__(self) -> str:
        return f"ProgressHandle({self.operation_name!r}, episode={self.episode})"


class ProgressCoordinator:
    """Owns the progress state and the thread allowed to change it.
    
    States: Hidden and Visible(name, fraction).
    - show(name): any state -> Visible(name, 0)
    - update(value): Visible only; fraction becomes clamp(value, 0, 1) and
      never moves backwards within an episode; ignored while Hidden
    - complete(): fraction becomes 1, then Hidden after ``hide_delay`` seconds
    
    There is one indicator: a second show() while another operation is
    visible takes it over. Jobs that need isolation use the handle returned by
    begin()/show().
    """
    
    def __init__(self, hide_delay: float = 0.6, thread_name: str = "progress-dispatcher"):
        """Initialize progress coordinator.
        
        Args:
            hide_delay: Seconds the full bar stays visible after complete()
            thread_name: Name of the dispatcher thread
        """
        self.hide_delay = hide_delay
        self.thread_name = thread_name
        
        self._queue: Queue = Queue()
        self._state = ProgressState()
        self._observers: List[Observer] = []
        self._observers_lock = threading.Lock()
        self._episode_lock = threading.Lock()
        self._last_episode = 0
        self._pending_hide: Optional[Tuple[int, float]] = None
        self._hidden_event = threading.Event()
        self._hidden_event.set()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
    
    @property
    def state(self) -> ProgressState:
        return self._state
    
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
    
    def start(self) -> None:
        """Start the dispatcher thread if it is not running."""
        with self._thread_lock:
            if self.running:
                return
            self._thread = threading.Thread(target=self._run, name=self.thread_name, daemon=True)
            self._thread.start()
            logger.debug(f"Started {self.thread_name}")
    
    def stop(self, timeout: Optional[float] = None) -> None:
        """Apply queued commands, then stop the dispatcher thread."""
        with self._thread_lock:
            thread = self._thread
            if thread is None or not thread.is_alive():
                return
            self._queue.put(None)
        thread.join(timeout)
        logger.debug(f"Stopped {self.thread_name}")
    
    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer called on the dispatcher thread after each change.
        
        Returns:
            Function that removes the observer
        """
        with self._observers_lock:
            self._observers.append(observer)
        
        def unsubscribe() -> None:
            with self._observers_lock:
                if observer in self._observers:
                    self._observers.remove(observer)
        
        return unsubscribe
    
    def begin(self, name: str) -> ProgressHandle:
        """Show the indicator for a new operation and return its handle."""
        with self._episode_lock:
            self._last_episode += 1
            episode = self._last_episode
        self._enqueue(_SHOW, episode, name)
        return ProgressHandle(self, episode, name)
    
    def show(self, name: str) -> ProgressHandle:
        return self.begin(name)
    
    def update(self, value: float) -> None:
        """Set the fraction of whatever operation is currently shown."""
        self._enqueue(_UPDATE, None, value)
    
    def complete(self) -> None:
        """Fill the bar of the current operation and hide it shortly after."""
        self._enqueue(_COMPLETE, None, None)
    
    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every command queued so far has been applied.
        
        Must not be called from an observer (it runs on the dispatcher thread).
        
        Returns:
            False if the timeout expired first
        """
        if timeout is None:
            self._queue.join()
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.005)
        return True
    
    def wait_until_hidden(self, timeout: Optional[float] = None) -> bool:
        """Apply queued commands, then wait for the indicator to be hidden.

        Returns:
            False if the timeout expired first
        """
        if timeout is None:
            self.flush()
            return self._hidden_event.wait()
        deadline = time.monotonic() + timeout
        if not self.flush(timeout):
            return False
        return self._hidden_event.wait(max(0.0, deadline - time.monotonic()))
    
    def _enqueue(self, command: str, episode: Optional[int], value) -> None:
        self.start()
        self._queue.put((command, episode, value))
    
    def _run(self) -> None:
        while True:
            try:
                item = self._queue.get(timeout=self._seconds_until_hide())
            except Empty:
                self._apply_pending_hide()
                continue
            
            if item is None:
                self._queue.task_done()
                break
            
            try:
                self._apply(*item)
                self._apply_pending_hide()
            except Exception:
                logger.exception(f"Failed to apply progress command {item!r}")
            finally:
                self._queue.task_done()
    
    def _apply(self, command: str, episode: Optional[int], value) -> None:
        state = self._state
        
        if command == _SHOW:
            self._pending_hide = None
            self._hidden_event.clear()
            if state.visible:
                logger.debug(f"'{value}' replaces '{state.operation_name}' on the progress indicator")
            logger.info(f"Progress started: {value}")
            self._set_state(ProgressState(operation_name=value, fraction=0.0, visible=True, episode=episode))
            return
        
        if not state.visible or (episode is not None and episode != state.episode):
            logger.debug(f"Ignoring progress {command} for inactive episode {episode}")
            return
        
        if command == _UPDATE:
            fraction = clamp(float(value))
            if fraction <= state.fraction:
                return
            self._set_state(replace(state, fraction=fraction))
        elif command == _COMPLETE:
            if self._pending_hide and self._pending_hide[0] == state.episode:
                return
            logger.info(f"Progress complete: {state.operation_name}")
            if state.fraction < 1.0:
                self._set_state(replace(state, fraction=1.0))
            self._pending_hide = (state.episode, time.monotonic() + self.hide_delay)
    
    def _seconds_until_hide(self) -> Optional[float]:
        if self._pending_hide is None:
            return None
        return max(0.0, self._pending_hide[1] - time.monotonic())
    
    def _apply_pending_hide(self) -> None:
        if self._pending_hide is None:
            return
        episode, deadline = self._pending_hide
        if time.monotonic() < deadline:
            return
        self._pending_hide = None
        state = self._state
        if state.visible and state.episode == episode:
            self._set_state(replace(state, visible=False))
            self._hidden_event.set()
    
    def _set_state(self, state: ProgressState) -> None:
        self._state = state
        with self._observers_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(state)
            except Exception:
                logger.exception("Progress observer failed")


_coordinator: Optional[ProgressCoordinator] = None
_coordinator_lock = threading.Lock()


def get_progress_coordinator(hide_delay: float = 0.6) -> ProgressCoordinator:
    """Return the process-wide coordinator, creating it on first use."""
    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            _coordinator = ProgressCoordinator(hide_delay=hide_delay)
        return _coordinator
