from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class FleetConfig:
    port: int = 3000
    db_path: str = "/var/lib/vmfleet/vmfleet.db"
    tick_interval_seconds: float = 60.0
    reconcile_every: int = 5  # ticks between capacity reconciliations; 0 = never
    health_port: int = 8080  # guest agent /health port
    health_timeout_seconds: float = 2.0
    hypervisor_timeout_seconds: float = 30.0
    log_max_entries: int = 1000  # per-agent operational log

    @staticmethod
    def from_env() -> FleetConfig:
        return FleetConfig(
            port=int(os.environ.get("VMFLEET_PORT", "3000")),
            db_path=os.environ.get("VMFLEET_DB_PATH", "/var/lib/vmfleet/vmfleet.db"),
            tick_interval_seconds=float(os.environ.get("VMFLEET_TICK_INTERVAL", "60")),
            reconcile_every=int(os.environ.get("VMFLEET_RECONCILE_EVERY", "5")),
            health_port=int(os.environ.get("VMFLEET_HEALTH_PORT", "8080")),
            health_timeout_seconds=float(os.environ.get("VMFLEET_HEALTH_TIMEOUT", "2")),
            hypervisor_timeout_seconds=float(os.environ.get("VMFLEET_HYPERVISOR_TIMEOUT", "30")),
            log_max_entries=int(os.environ.get("VMFLEET_LOG_MAX_ENTRIES", "1000")),
        )
