"""
NoteSetup - local environment bootstrap for the notes desktop app
"""

__version__ = "0.3.0"

from .core import SetupOrchestrator
from .errors import SetupError
from .models import ConnectionParams, DatabaseHandle, InstallationStage, SetupOutcome

__all__ = [
    "ConnectionParams",
    "DatabaseHandle",
    "InstallationStage",
    "SetupError",
    "SetupOrchestrator",
    "SetupOutcome",
]
