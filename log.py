import logging
import sys
from middleware import request_id_context


class ContextualFilter(logging.Filter):
    """Stamps every record with the request id of the request being served."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_context.get()
        return True


def setup_logging(log_level: str = "INFO", log_filename: str | None = "experiment_stats.log"):
    """
    Configure the root logger once for the API process and the Celery workers.
    Records go to stdout and, when log_filename is set, to an appended file.
    """
    log_filter = ContextualFilter()

    # The format must include the custom 'request_id' attribute
    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(request_id)s] - %(name)s - %(message)s'
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_filename:
        handlers.append(logging.FileHandler(log_filename, mode='a'))

    for handler in handlers:
        handler.addFilter(log_filter)
        handler.setFormatter(formatter)

    # force=True so a second Config() (tests, celery worker) does not stack handlers
    logging.basicConfig(level=logging.getLevelName(log_level.upper()), handlers=handlers, force=True)
