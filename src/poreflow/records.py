"""Simulation output records and the append-only record table."""

import csv
import io
import logging
import math
import os
import typing

import attrs
import numpy as np

from poreflow.errors import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["Record", "RecordTable"]


@attrs.frozen(slots=True)
class Record:
    """
    One row of simulation output.

    Quantities a model does not produce are left as NaN.
    """

    step: int
    """Invasion step (quasi-static) or time step (time-marching) counter of the run."""
    stage: str
    """Name of the stage or model that produced the record."""
    time: float = 0.0
    """Simulated time (s). Zero for quasi-static stages."""
    injected_pvs: float = math.nan
    """Cumulative injected pore volumes."""
    capillary_pressure: float = math.nan
    """Capillary pressure p_oil - p_water (Pa)."""
    water_saturation: float = math.nan
    """Water saturation of the accessible pore volume, bulk occupancy only."""
    water_saturation_with_films: float = math.nan
    """Water saturation including corner film volumes."""
    pressure_drop: float = math.nan
    """Pressure drop across the network (Pa)."""
    flow_rate: float = math.nan
    """Total flow rate (m³/s)."""
    water_flow_rate: float = math.nan
    """Water flow rate leaving through the outlet (m³/s)."""
    oil_flow_rate: float = math.nan
    """Oil flow rate leaving through the outlet (m³/s)."""
    fractional_flow: float = math.nan
    """Water fractional flow at the outlet."""
    krw: float = math.nan
    """Water relative permeability."""
    kro: float = math.nan
    """Oil relative permeability."""
    absolute_permeability: float = math.nan
    """Absolute permeability (m²)."""
    mean_concentration: float = math.nan
    """Volume-averaged tracer concentration."""
    outlet_concentration: float = math.nan
    """Flow-averaged tracer concentration leaving through the outlet."""

    def as_dict(self) -> typing.Dict[str, typing.Any]:
        return attrs.asdict(self)


class RecordTable:
    """
    Append-only, ordered table of simulation records.

    Steps and times never decrease. Appended records are never modified;
    readers get tuples and array copies.
    """

    def __init__(self) -> None:
        self._records: typing.List[Record] = []

    @property
    def columns(self) -> typing.Tuple[str, ...]:
        return tuple(field.name for field in attrs.fields(Record))

    def append(self, record: Record) -> None:
        """
        Append a record.

        :raises ValidationError: If the record would step or time backwards.
        """
        if self._records:
            last = self._records[-1]
            if record.step < last.step or record.time < last.time:
                raise ValidationError(
                    f"Record (step {record.step}, time {record.time}) precedes the last "
                    f"record (step {last.step}, time {last.time})."
                )
        self._records.append(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> typing.Iterator[Record]:
        return iter(tuple(self._records))

    def __getitem__(self, index: int) -> Record:
        return self._records[index]

    @property
    def records(self) -> typing.Tuple[Record, ...]:
        return tuple(self._records)

    @property
    def last(self) -> typing.Optional[Record]:
        return self._records[-1] if self._records else None

    def where(self, stage: str) -> typing.Tuple[Record, ...]:
        """Records produced by one stage."""
        return tuple(record for record in self._records if record.stage == stage)

    def as_array(self, column: str) -> np.typing.NDArray:
        """Copy of one column as a numpy array."""
        if column not in self.columns:
            raise ValidationError(f"Unknown column: {column!r}")
        return np.array([getattr(record, column) for record in self._records])

    def to_csv(self, target: typing.Union[str, os.PathLike, typing.TextIO, None] = None) -> str:
        """
        Write the table as CSV.

        :param target: File path or text stream. When None, only the CSV text is returned.
        :return: The CSV text.
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(self.columns)
        for record in self._records:
            writer.writerow(attrs.astuple(record))
        text = buffer.getvalue()

        if target is None:
            return text
        if isinstance(target, (str, os.PathLike)):
            with open(target, "w", newline="") as file:
                file.write(text)
            logger.debug(f"Wrote {len(self._records)} records to {os.fspath(target)}")
        else:
            target.write(text)
        return text
