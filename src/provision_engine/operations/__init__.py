"""Periodic maintenance sweeps for provisions and reservations."""

from .orphan_sweeper import OrphanReservationSweeper, OrphanSweepReport
from .stale_provisions import StaleProvisionDetector, StaleProvisionEntry, SweepReport

__all__ = [
    'OrphanReservationSweeper',
    'OrphanSweepReport',
    'StaleProvisionDetector',
    'StaleProvisionEntry',
    'SweepReport',
]
