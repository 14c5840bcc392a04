"""Run context shared between the simulation core and its observers."""

import logging
import threading
import typing

from poreflow.types import Termination

if typing.TYPE_CHECKING:
    from poreflow.models.base import StageResult

logger = logging.getLogger(__name__)

__all__ = ["RunContext", "Observer"]

Observer = typing.Callable[["RunContext", str], None]
"""Callback invoked with the context and a status message whenever the status changes."""


class RunContext:
    """
    Cooperative cancellation and status channel of one simulation run.

    A context is passed by reference into every stage and step routine.
    Cancellation may be requested from any thread; the core checks it once
    per invasion or time step and stops with the last committed state.
    """

    def __init__(self) -> None:
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._observers: typing.List[Observer] = []
        self._ready = True
        self._running = False
        self._notification = ""
        self.results: typing.List["StageResult"] = []
        """Outcome of every stage run so far."""

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancel.is_set()

    def request_cancel(self) -> None:
        """Request that the run stops after the current step."""
        self._cancel.set()
        logger.info("Cancellation requested")

    def reset(self) -> None:
        """Clear a cancellation request so the context can be reused."""
        self._cancel.clear()

    @property
    def ready(self) -> bool:
        """Whether the context can start a new run."""
        return self._ready

    @property
    def running(self) -> bool:
        """Whether a run is in progress."""
        return self._running

    @property
    def notification(self) -> str:
        """Latest progress or status message."""
        return self._notification

    @property
    def termination(self) -> typing.Optional[Termination]:
        """Termination reason of the latest stage, if any stage has run."""
        return self.results[-1].termination if self.results else None

    def subscribe(self, observer: Observer) -> typing.Callable[[], None]:
        """
        Register a status observer.

        :param observer: Callable receiving the context and the new message.
        :return: A function that removes the observer.
        """
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def notify(self, message: str) -> None:
        """Publish a status message to all observers."""
        self._notification = message
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            observer(self, message)

    def start(self) -> None:
        """Mark the beginning of a run. A cancellation requested earlier stays in effect."""
        self.results = []
        self._ready = False
        self._running = True
        self.notify("Simulation started")

    def finish(self, message: str = "Simulation finished") -> None:
        """Mark the end of a run, whatever its outcome."""
        self._running = False
        self._ready = True
        self.notify(message)
