"""HTTP server and background scheduling for the lead crawler."""

from .api import create_app
from .scheduler import RefreshScheduler

__all__ = ['create_app', 'RefreshScheduler']
