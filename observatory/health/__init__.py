"""Health subsystem — check engine, SQLite storage, scheduler, retention."""

from .engine import execute_check
from .models import CheckOutcome, Observation, ObservedStatus, Status, TargetDescriptor
from .retention import RetentionSweeper
from .scheduler import HealthScheduler, TargetController
from .store import DuplicateObservationError, ObservationStore, StoreError
