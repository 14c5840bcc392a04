import logging
import typing

import attrs

from poreflow.types import StageKind, Termination

logger = logging.getLogger(__name__)

__all__ = ["StageResult", "log_progress"]


@attrs.frozen
class StageResult:
    """
    Outcome of one displacement stage or time-marching run.
    """

    stage: StageKind
    """The stage that ran."""
    termination: Termination
    """Why the stage stopped."""
    steps: int = 0
    """Invasion or time steps committed during the stage."""
    water_saturation: float = 1.0
    """Water saturation when the stage stopped."""
    capillary_pressure: float = 0.0
    """Capillary pressure when the stage stopped (quasi-static stages)."""
    time: float = 0.0
    """Simulated time when the stage stopped (time-marching models)."""
    message: typing.Optional[str] = None
    """A message providing additional information about the result."""

    @property
    def success(self) -> bool:
        """Whether the stage ended normally rather than on a numerical failure."""
        return self.termination is not Termination.SOLVER_FAILURE


def log_progress(
    stage: StageKind,
    step: int,
    water_saturation: float,
    interval: int,
    capillary_pressure: typing.Optional[float] = None,
    time: typing.Optional[float] = None,
    total_time: typing.Optional[float] = None,
) -> typing.Optional[str]:
    """
    Logs stage progress at specified intervals.

    :return: The logged message, or None when nothing was logged.
    """
    if not (step <= 1 or step % interval == 0):
        return None
    message = f"{stage.value}: step {step} - Sw = {water_saturation:.4f}"
    if capillary_pressure is not None:
        message += f" - Pc = {capillary_pressure:.4f} Pa"
    if time is not None and total_time:
        message += f" - t = {time:.4e}s ({100.0 * time / total_time:.2f}%)"
    logger.info(message)
    return message
