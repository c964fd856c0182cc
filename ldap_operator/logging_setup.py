"""
Log handlers for the operator process.

Console output goes to stderr for the container runtime to collect. A log
directory may be configured as well, in which case a rotating file is kept
next to it. Every handler passes records through SensitiveDataFilter, since
reconcile logs routinely mention bind DNs, secrets and userPassword values.
"""

import os
import re
import sys
import logging
import logging.handlers
from typing import Dict, Any, List, Optional

LOG_FILE_NAME = 'operator.log'

CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in a record's message before any handler formats it."""
    
    SENSITIVE_KEYWORDS = (
        'userPassword', 'password', 'bind_password', 'smtp_password',
        'secret', 'token', 'credential', 'pwd', 'authorization',
    )
    
    _keywords = '|'.join(SENSITIVE_KEYWORDS)
    
    # password=value, token: value
    _ASSIGNMENT = re.compile(rf'((?:{_keywords})\s*[=:]\s*)(?!\*\*\*\*)[^\s,}}\]\'"]+', re.IGNORECASE)
    # 'userPassword': ['value'] and "password": "value" inside dict reprs
    _QUOTED = re.compile(rf'(["\'](?:{_keywords})["\']\s*:\s*\[?\s*["\'])[^"\']*(["\'])', re.IGNORECASE)
    # {ARGON2}$argon2id$... and other scheme-prefixed hashes
    _HASH = re.compile(r'\{(ARGON2|SSHA|SHA|CRYPT)\}\S+', re.IGNORECASE)
    
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        message = self._ASSIGNMENT.sub(r'\1****', message)
        message = self._QUOTED.sub(r'\1****\2', message)
        message = self._HASH.sub(r'{\1}****', message)
        record.msg = message
        record.args = None
        return True


def _level(name: Any, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


class LoggingManager:
    """
    Installs the operator's handlers on the root logger.
    
    Configuration happens once per process unless forced, so that tests and
    the health check can call it repeatedly without stacking handlers.
    """
    
    def __init__(self):
        self.configured = False
        self.log_dir: Optional[str] = None
    
    def setup_logging(self, config: Optional[Dict[str, Any]], force: bool = False) -> None:
        """
        Replace the root logger's handlers according to the logging section.
        
        Recognised keys: level, console_output, console_level, log_dir,
        rotation ('daily' or 'none') and retention_days.
        """
        if self.configured and not force:
            return
        
        settings = config or {}
        level = _level(settings.get('level', 'INFO'))
        self.log_dir = settings.get('log_dir')
        
        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(level)
        for handler in self._build_handlers(settings, level):
            handler.addFilter(SensitiveDataFilter())
            root.addHandler(handler)
        
        # ldap3 echoes whole requests, bind included, below WARNING
        logging.getLogger('ldap3').setLevel(logging.WARNING)
        
        self.configured = True
        logging.getLogger(__name__).info(
            f"Logging at {logging.getLevelName(level)}, "
            f"{len(root.handlers)} handler(s), log directory {self.log_dir or 'disabled'}")
    
    def _build_handlers(self, settings: Dict[str, Any], level: int) -> List[logging.Handler]:
        handlers = []
        
        if self.log_dir and self._prepare_log_dir():
            file_handler = self._file_handler(settings.get('rotation', 'daily'),
                                              int(settings.get('retention_days', 7)))
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
            handlers.append(file_handler)
        
        if settings.get('console_output', True):
            console = logging.StreamHandler(sys.stderr)
            console.setLevel(_level(settings.get('console_level', logging.getLevelName(level)), level))
            console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%Y-%m-%dT%H:%M:%S'))
            handlers.append(console)
        
        return handlers
    
    def _prepare_log_dir(self) -> bool:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            # Logging is not configured yet
            print(f"Cannot create log directory {self.log_dir} ({e}); logging to console only",
                  file=sys.stderr)
            self.log_dir = None
            return False
        return True
    
    def _file_handler(self, rotation: str, retention_days: int) -> logging.Handler:
        path = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() not in ('daily', 'midnight'):
            return logging.FileHandler(path, encoding='utf-8')
        
        handler = logging.handlers.TimedRotatingFileHandler(
            path, when='midnight', backupCount=retention_days, encoding='utf-8')
        handler.suffix = '%Y-%m-%d'
        return handler


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], force: bool = False) -> None:
    """Configure process-wide logging from the logging section of the config."""
    _logging_manager.setup_logging(config, force=force)
