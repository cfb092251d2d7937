"""
Scheduled Jobs

Confidence decay, TTL expiration and the maintenance runner that chains them.
"""

from .decay_recalculation import DecayRecalculationJob, DecayStats
from .expiration_sweeper import ExpirationSweeper
from .maintenance import MaintenanceRunner, run_maintenance

__all__ = [
    'DecayRecalculationJob',
    'DecayStats',
    'ExpirationSweeper',
    'MaintenanceRunner',
    'run_maintenance',
]
