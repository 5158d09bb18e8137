"""Error taxonomy for fleet lifecycle operations."""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all vmfleet errors."""


class NotFoundError(FleetError):
    """The VM disappeared between the decision and the action.

    Fatal for the current launch attempt, never for the fleet.
    """

    def __init__(self, vm_name: str, hypervisor: str = "") -> None:
        self.vm_name = vm_name
        self.hypervisor = hypervisor
        where = f" on hypervisor {hypervisor}" if hypervisor else ""
        super().__init__(f'Could not find VM "{vm_name}"{where}')


class TransportError(FleetError):
    """A call to the hypervisor or the guest failed at the transport level."""


class CapacityRaceError(FleetError):
    """Capacity changed after the launch decision was made.

    Benign: the launch is abandoned and the next tick re-evaluates.
    """


class ConfigurationError(FleetError):
    """A node references a hypervisor or VM mapping that does not exist."""
