"""
Mindship - drift detection and voice interventions for focus sessions
"""

__version__ = "0.1.0"

from .main import FocusHost
from .services.aggregator import DriftStateAggregator
from .services.dialogue import InterventionDialogueController
from .services.session import SessionLifecycleController
from .services.database import DatabaseManager

__all__ = [
    'FocusHost',
    'DriftStateAggregator',
    'InterventionDialogueController',
    'SessionLifecycleController',
    'DatabaseManager',
]
