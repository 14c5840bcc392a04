"""Fluid property constants supplied to the displacement models."""

import typing

import attrs

__all__ = ["FluidProperties"]

_positive = attrs.validators.gt(0.0)


@attrs.frozen(slots=True)
class FluidProperties:
    """
    Constant fluid properties for an oil/water/gas system.

    Values are in SI units. Defaults describe a light oil and brine at
    laboratory conditions.
    """

    oil_viscosity: float = attrs.field(default=1e-3, validator=_positive)
    """Oil dynamic viscosity (Pa·s)."""
    water_viscosity: float = attrs.field(default=1e-3, validator=_positive)
    """Water dynamic viscosity (Pa·s)."""
    gas_viscosity: float = attrs.field(default=1.8e-5, validator=_positive)
    """Gas dynamic viscosity (Pa·s)."""
    oil_water_surface_tension: float = attrs.field(default=30e-3, validator=_positive)
    """Oil-water interfacial tension (N/m)."""
    oil_gas_surface_tension: float = attrs.field(default=20e-3, validator=_positive)
    """Oil-gas interfacial tension (N/m)."""
    water_gas_surface_tension: float = attrs.field(default=72e-3, validator=_positive)
    """Water-gas interfacial tension (N/m)."""
    oil_density: float = attrs.field(default=850.0, validator=_positive)
    """Oil density (kg/m³)."""
    water_density: float = attrs.field(default=1000.0, validator=_positive)
    """Water density (kg/m³)."""
    gas_density: float = attrs.field(default=1.2, validator=_positive)
    """Gas density (kg/m³)."""
    oil_diffusion_coefficient: float = attrs.field(default=1e-9, validator=_positive)
    """Molecular diffusion coefficient of a tracer in oil (m²/s)."""
    water_diffusion_coefficient: float = attrs.field(default=2e-9, validator=_positive)
    """Molecular diffusion coefficient of a tracer in water (m²/s)."""

    @property
    def viscosity_ratio(self) -> float:
        """Oil to water viscosity ratio."""
        return self.oil_viscosity / self.water_viscosity

    def viscosities(self) -> typing.Tuple[float, float, float]:
        """Return (water, oil, gas) viscosities, in `Phase` order."""
        return (self.water_viscosity, self.oil_viscosity, self.gas_viscosity)
