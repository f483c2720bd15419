import logging
import threading
from functools import lru_cache

from models.experiments import ActiveExperimentsResponse, ExperimentResponse
from config import config

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
EXPERIMENT_CACHE_TTL = 60  # seconds; definitions change only on create/start
ACTIVE_EXPERIMENTS_KEY = "exp:active"

# --- Valkey/Redis Backend Implementations ---

class _MockValkeyBackend:
    """Simulates the low-level Valkey/Redis client (in-memory)."""
    def __init__(self):
        self._cache = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        logger.debug("cache mock get: %s", key)
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: str, ex: int):
        # 'ex' is ignored; entries live until overwritten or deleted
        logger.debug("cache mock set: %s", key)
        with self._lock:
            self._cache[key] = value

    def delete(self, key: str):
        with self._lock:
            self._cache.pop(key, None)


class RealValkeyBackend:
    """Implementation using the redis-py client (compatible with Valkey)."""
    def __init__(self, host: str, port: int, db: int = 0, password: str | None = None):
        import redis

        self.client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
            socket_timeout=2.0
        )
        self.client.ping()

    # Cache failures degrade to a database read, they never fail the request
    def get(self, key: str) -> str | None:
        try:
            logger.debug("cache valkey get: %s", key)
            return self.client.get(key)
        except Exception as e:
            logger.error("Valkey GET error for key %s: %s", key, e)
            return None

    def set(self, key: str, value: str, ex: int):
        try:
            logger.debug("cache valkey set: %s", key)
            self.client.set(key, value, ex=ex)
        except Exception as e:
            logger.error("Valkey SET error for key %s: %s", key, e)

    def delete(self, key: str):
        try:
            self.client.delete(key)
        except Exception as e:
            logger.error("Valkey DEL error for key %s: %s", key, e)


# --- Dedicated Cache Client Class ---

class CacheClient:
    """Caches experiment definitions (experiment + variants) as JSON documents."""

    def __init__(self, backend):
        self.backend = backend
        logger.debug("CacheClient backend: %s", self.backend)

    @staticmethod
    def _experiment_key(experiment_id: int) -> str:
        return f"exp:{experiment_id}"

    def get_experiment(self, experiment_id: int) -> ExperimentResponse | None:
        json_str = self.backend.get(self._experiment_key(experiment_id))
        if not json_str:
            return None
        try:
            return ExperimentResponse.model_validate_json(json_str)
        except ValueError:
            # Written by an older schema; drop it and let the caller reload
            logger.warning("discarding unreadable cache entry for experiment %d", experiment_id)
            self.backend.delete(self._experiment_key(experiment_id))
            return None

    def set_experiment(self, experiment: ExperimentResponse):
        self.backend.set(self._experiment_key(experiment.id), experiment.model_dump_json(), ex=EXPERIMENT_CACHE_TTL)
        logger.debug("Experiment %d cached.", experiment.id)

    def get_active_experiments(self) -> ActiveExperimentsResponse | None:
        json_str = self.backend.get(ACTIVE_EXPERIMENTS_KEY)
        if not json_str:
            return None
        try:
            return ActiveExperimentsResponse.model_validate_json(json_str)
        except ValueError:
            logger.warning("discarding unreadable active experiments cache entry")
            self.backend.delete(ACTIVE_EXPERIMENTS_KEY)
            return None

    def set_active_experiments(self, active: ActiveExperimentsResponse):
        self.backend.set(ACTIVE_EXPERIMENTS_KEY, active.model_dump_json(), ex=EXPERIMENT_CACHE_TTL)

    def invalidate_active_experiments(self):
        self.backend.delete(ACTIVE_EXPERIMENTS_KEY)


def build_cache_backend(host: str, port: int):
    """Valkey when configured and reachable, otherwise the in-memory backend."""
    if not host:
        logger.info("VALKEY_HOST not set. Using Mock Valkey Backend.")
        return _MockValkeyBackend()
    try:
        logger.info("valkey_host: %s, port: %d", host, port)
        return RealValkeyBackend(host=host, port=port)
    except Exception as e:
        logger.warning("Falling back to Mock Valkey Backend, Valkey unreachable: %s", e)
        return _MockValkeyBackend()


@lru_cache(maxsize=1)
def get_cache_client() -> CacheClient:
    """FastAPI dependency; the client is built on first use, not at import."""
    return CacheClient(backend=build_cache_backend(config.valkey_host, config.valkey_port))


def get_mock_cache_client() -> CacheClient:
    return CacheClient(backend=_MockValkeyBackend())
