from fastapi import Depends
from sqlalchemy.orm import Session

from config import config
from data.database import get_db
from models.stats import StatsSettings
from services.assignment import SqlAssignmentRegistry
from services.cache import get_cache_client
from services.counters import SqlCounterStore


# Stores are built per request around the request's session; nothing is process-wide
def get_counter_store(db: Session = Depends(get_db)) -> SqlCounterStore:
    return SqlCounterStore(db)


def get_assignment_registry(db: Session = Depends(get_db)) -> SqlAssignmentRegistry:
    return SqlAssignmentRegistry(db)


def get_stats_settings() -> StatsSettings:
    return StatsSettings.from_config(config)


# --- DEPENDENCY INJECTION SETUP ---
DB_DEPENDENCY = Depends(get_db)
CACHE_CLIENT = Depends(get_cache_client)
COUNTER_STORE = Depends(get_counter_store)
ASSIGNMENT_REGISTRY = Depends(get_assignment_registry)
STATS_SETTINGS = Depends(get_stats_settings)
