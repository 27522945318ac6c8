"""Background workers."""
from .maintenance_worker import MaintenanceWorker, calculate_next_run_time, run_maintenance_once

__all__ = ["MaintenanceWorker", "calculate_next_run_time", "run_maintenance_once"]
