import logging
import math
import typing

import attrs

from poreflow.errors import TimingError, ValidationError

__all__ = ["Timer"]

logger = logging.getLogger(__name__)


@attrs.define
class Timer:
    """
    Simulation clock for event-limited time marching.

    Step sizes are chosen by the model (the time to the next fill or empty
    event); the timer only bounds them by `max_step_size` and the time left,
    and keeps count of elapsed time and accepted steps.
    """

    simulation_time: float
    """Total simulation time in seconds."""
    max_step_size: float = math.inf
    """Maximum allowable time step size in seconds."""
    max_steps: typing.Optional[int] = None
    """Maximum number of time steps to run for."""

    elapsed_time: float = attrs.field(init=False, default=0.0)
    """Current simulation time in seconds (sum of all accepted steps)."""
    step_size: float = attrs.field(init=False, default=0.0)
    """The time step size (in seconds) used for the most recently accepted step."""
    step: int = attrs.field(init=False, default=0)
    """Number of accepted time steps completed so far."""

    def __attrs_post_init__(self) -> None:
        if not self.simulation_time > 0:
            raise ValidationError(
                f"Simulation time must be positive, got {self.simulation_time}."
            )
        if not self.max_step_size > 0:
            raise ValidationError(
                f"Maximum step size must be positive, got {self.max_step_size}."
            )

    @property
    def next_step(self) -> int:
        """Returns the next time step count."""
        return self.step + 1

    @property
    def time_remaining(self) -> float:
        """Remaining simulation time in seconds."""
        return max(self.simulation_time - self.elapsed_time, 0.0)

    @property
    def progress(self) -> float:
        """Fraction of the simulation time elapsed, in [0, 1]."""
        return min(self.elapsed_time / self.simulation_time, 1.0)

    def done(self) -> bool:
        """Whether the simulation time or the step budget is exhausted."""
        if self.time_remaining <= 0:
            return True
        if self.max_steps is not None and self.step >= self.max_steps:
            return True
        return False

    def bound_step_size(self, step_size: float) -> float:
        """Clamp a proposed step size to the maximum step size and the time remaining."""
        return min(step_size, self.max_step_size, self.time_remaining)

    def accept_step(self, step_size: float) -> float:
        """
        Registers an accepted time step.

        :param step_size: The time step size that was just taken.
        :return: The elapsed simulation time.
        """
        if step_size < 0:
            raise TimingError(f"Step size must be non-negative, got {step_size}.")
        if step_size > self.time_remaining * (1.0 + 1e-12):
            raise TimingError(
                f"Step size {step_size} exceeds remaining time {self.time_remaining}."
            )
        if step_size >= self.time_remaining * (1.0 - 1e-12):
            self.elapsed_time = self.simulation_time
        else:
            self.elapsed_time += step_size
        self.step_size = step_size
        self.step += 1
        logger.debug(
            f"Time step {self.step} of size {step_size:.6e}s accepted "
            f"at elapsed time {self.elapsed_time:.6e}s"
        )
        return self.elapsed_time
