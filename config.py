import os
import log
from dotenv import load_dotenv

# Load .env file into environment
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    def __init__(self):
        self.valkey_host = os.getenv("VALKEY_HOST", "")
        self.valkey_port = int(os.getenv("VALKEY_PORT", 6379))
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./experimentation.db")
        self.sqlite_timeout = float(os.getenv("SQLITE_TIMEOUT", 30))
        self.log_level = os.getenv("LOG_LEVEL", default="INFO")
        self.log_file = os.getenv("LOG_FILE", default="experiment_stats.log")
        self.celery_broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
        self.celery_backend_url = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/1")
        self.celery_always_eager = _env_bool("CELERY_ALWAYS_EAGER")

        # Statistics inputs, see services.statistics
        self.cost_ratio = float(os.getenv("COST_RATIO", 0.60))
        self.significance_level = float(os.getenv("SIGNIFICANCE_LEVEL", 0.05))
        self.confidence_level = float(os.getenv("CONFIDENCE_LEVEL", 0.95))
        self.projection_days = int(os.getenv("PROJECTION_DAYS", 30))
        self.ztest_use_control_sample_size = _env_bool("ZTEST_USE_CONTROL_SAMPLE_SIZE")

        # Call setup_logging when the application starts
        log.setup_logging(self.log_level, self.log_file)

    def __repr__(self):
        return (
            f"<Settings db={self.database_url} valkey={self.valkey_host}:{self.valkey_port} "
            f"loglevel={self.log_level}, broker_url:{self.celery_broker_url}, "
            f"cost_ratio={self.cost_ratio}, confidence={self.confidence_level}>"
        )

config = Config()
