#!/usr/bin/env python3
"""
Cloud Audit Engine - Logging System
Component loggers write to rotating files under data/logs; each audit run
also gets its own log file in data/audits/<audit_id>/audit.log.
"""

import logging
from logging.handlers import RotatingFileHandler

from .paths import paths
from .config import config

LOG_FORMAT = '%(asctime)s | %(name)s | %(levelname)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class CloudAuditLogger:
    """Centralized logging with rotation."""

    _loggers: dict = {}

    @classmethod
    def _level(cls) -> int:
        name = str(config.get('logging.level', 'INFO')).upper()
        return getattr(logging, name, logging.INFO)

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get or create a logger for a component."""
        if name in cls._loggers:
            return cls._loggers[name]

        paths.logs.mkdir(parents=True, exist_ok=True)
        level = cls._level()

        logger = logging.getLogger(f"cloudaudit.{name}")
        logger.setLevel(level)
        logger.handlers.clear()

        file_handler = RotatingFileHandler(
            paths.logs / f"{name}.log",
            maxBytes=int(config.get('logging.max_bytes', 10 * 1024 * 1024)),
            backupCount=int(config.get('logging.backup_count', 30)),
            encoding='utf-8'
        )
        file_handler.setLevel(level)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.WARNING)

        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
        file_handler.setFormatter(formatter)
        console_handler.setFormatter(formatter)

        logger.addHandler(file_handler)
        logger.addHandler(console_handler)

        cls._loggers[name] = logger
        return logger

    @classmethod
    def get_audit_logger(cls, audit_id: str) -> logging.Logger:
        """Get logger for a specific audit run."""
        logger_name = f"audit.{audit_id}"
        if logger_name in cls._loggers:
            return cls._loggers[logger_name]

        log_file = paths.audit_dir(audit_id) / "audit.log"

        logger = logging.getLogger(f"cloudaudit.{logger_name}")
        logger.setLevel(logging.DEBUG)
        logger.handlers.clear()
        logger.propagate = False

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | %(threadName)s | %(message)s',
            datefmt=DATE_FORMAT
        ))
        logger.addHandler(file_handler)

        cls._loggers[logger_name] = logger
        return logger

    @classmethod
    def close_audit_logger(cls, audit_id: str):
        """Close and forget the file handler of a finished audit."""
        logger = cls._loggers.pop(f"audit.{audit_id}", None)
        if logger is None:
            return
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger by name."""
    return CloudAuditLogger.get_logger(name)


def get_audit_logger(audit_id: str) -> logging.Logger:
    """Get an audit run logger."""
    return CloudAuditLogger.get_audit_logger(audit_id)


def close_audit_logger(audit_id: str):
    CloudAuditLogger.close_audit_logger(audit_id)
