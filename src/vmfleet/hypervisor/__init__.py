from vmfleet.hypervisor.capacity import CapacityTracker
from vmfleet.hypervisor.control import (
    Domain,
    DomainControl,
    DomainLookup,
    DomainState,
    Found,
    HttpDomainControl,
    NotFound,
    TransportFailure,
)
from vmfleet.hypervisor.hypervisor import Hypervisor

__all__ = [
    "CapacityTracker",
    "Domain",
    "DomainControl",
    "DomainLookup",
    "DomainState",
    "Found",
    "HttpDomainControl",
    "Hypervisor",
    "NotFound",
    "TransportFailure",
]
