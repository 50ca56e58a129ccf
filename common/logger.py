"""
Layered loggers that tag each record with the calling class or function
"""
import logging
import inspect
from pathlib import Path
from logging.handlers import RotatingFileHandler
from core.config import app_config

_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class AutoPrefixLogger:
    """Logger wrapper that prefixes messages with the caller's class or function name"""

    _log_methods = frozenset({'debug', 'info', 'warning', 'error', 'critical', 'exception'})

    def __init__(self, base_logger: logging.Logger):
        self.base_logger = base_logger

    @staticmethod
    def _caller_name():
        # Frames: [_caller_name, log_method, caller]
        frame = inspect.currentframe()
        try:
            caller = frame.f_back.f_back if frame and frame.f_back else None
            if caller is None:
                return None
            local_vars = caller.f_locals
            if 'self' in local_vars:
                return type(local_vars['self']).__name__
            if 'cls' in local_vars and isinstance(local_vars['cls'], type):
                return local_vars['cls'].__name__
            name = caller.f_code.co_name
            return None if name.startswith('<') else name
        finally:
            del frame

    def __getattr__(self, name):
        if name not in self._log_methods:
            return getattr(self.base_logger, name)

        base_method = getattr(self.base_logger, name)

        def log_method(msg, *args, **kwargs):
            if not self.base_logger.isEnabledFor(_LEVELS.get(name, logging.ERROR)):
                return None
            prefix = self._caller_name()
            return base_method(f"[{prefix}] {msg}" if prefix else msg, *args, **kwargs)

        return log_method


_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL,
    'exception': logging.ERROR,
}


def _file_handler(path: Path, level: int, config: dict) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=config['max_bytes'],
        backupCount=config['backup_count'],
        encoding='utf-8'
    )
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.setLevel(level)
    return handler


def setup_logger(layer_name: str = 'app') -> AutoPrefixLogger:
    """
    Setup a layer logger with a console handler and optional rotating files.

    Args:
        layer_name: Layer name for the logger (e.g., 'app', 'genai', 'service', 'api.analysis')

    Returns:
        AutoPrefixLogger instance with automatic prefix functionality
    """
    base_logger = logging.getLogger(layer_name)

    # Avoid duplicate handlers if logger already exists
    if base_logger.handlers:
        return AutoPrefixLogger(base_logger)

    config = app_config.logging_config
    level_name = config['layer_levels'].get(layer_name, config['level'])
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    base_logger.setLevel(level)
    base_logger.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(_FORMAT))
    console_handler.setLevel(level)
    base_logger.addHandler(console_handler)

    if config['to_file']:
        log_dir = Path(config['log_dir'])
        log_dir.mkdir(parents=True, exist_ok=True)
        base_logger.addHandler(_file_handler(log_dir / 'app.log', max(level, logging.INFO), config))

        # Debug records go to their own file
        if level <= logging.DEBUG:
            debug_handler = _file_handler(log_dir / 'debug.log', logging.DEBUG, config)
            debug_handler.addFilter(lambda record: record.levelno == logging.DEBUG)
            base_logger.addHandler(debug_handler)

    return AutoPrefixLogger(base_logger)

# Default application logger
logger = setup_logger('app')
