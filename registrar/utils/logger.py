import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
MAIN_LOG_FILE = 'logs/registrar.log'

def _file_handler(log_file: str) -> RotatingFileHandler:
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    handler = RotatingFileHandler(
        log_file,
        maxBytes=10*1024*1024,
        backupCount=5
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler

def setup_logger(name: str, log_file: str = MAIN_LOG_FILE, level=logging.INFO, console_level=logging.WARNING):
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Modules call this at import time; repeated calls must not stack handlers.
    if logger.handlers:
        return logger

    logger.addHandler(_file_handler(log_file))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler.setLevel(console_level)
    logger.addHandler(console_handler)

    return logger

def _registrar_loggers(prefix: str):
    for name, candidate in list(logging.Logger.manager.loggerDict.items()):
        if isinstance(candidate, logging.Logger) and name.startswith(prefix):
            yield candidate

def set_console_level(level, prefix: str = 'registrar'):
    for candidate in _registrar_loggers(prefix):
        for handler in candidate.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, RotatingFileHandler):
                handler.setLevel(level)

def configure_logging(log_file=None, level=None, prefix: str = 'registrar'):
    """Apply the ``logging.file`` and ``logging.level`` settings to loggers
    that were already created at import time."""
    if isinstance(level, str):
        level = level.upper()

    for candidate in _registrar_loggers(prefix):
        if level is not None:
            candidate.setLevel(level)
        if not log_file:
            continue
        for handler in list(candidate.handlers):
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename != os.path.abspath(log_file):
                candidate.removeHandler(handler)
                handler.close()
                candidate.addHandler(_file_handler(log_file))
