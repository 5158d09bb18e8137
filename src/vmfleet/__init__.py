"""vmfleet: on-demand VM build agents with per-hypervisor capacity limits."""

__version__ = "0.1.0"
