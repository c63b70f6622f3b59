"""
Configuration du logging structuré JSON.

Chaque log contient:
- timestamp: ISO8601
- level: DEBUG/INFO/WARNING/ERROR/CRITICAL
- message: message principal
- url: URL traitée (optionnel)
- platform: plateforme détectée (optionnel)
- session_id: session de scraping (optionnel)
- trace_id: ID de traçage pour corrélation (optionnel)
- duration_ms: durée en ms (optionnel)
- extra: données additionnelles
"""
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger as loguru_logger

# Context variable pour le trace_id (propagé à travers les tâches asyncio)
_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

# Niveaux exposés par la config (logLevel) -> niveaux stdlib
LOG_LEVELS = {
    "none": logging.CRITICAL + 10,
    "basic": logging.INFO,
    "detailed": logging.DEBUG,
}

_RECORD_KEYS = ("url", "platform", "session_id", "duration_ms", "error_type", "status_code", "method")


def get_trace_id() -> Optional[str]:
    """Récupère le trace_id courant."""
    return _trace_id.get()


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Définit un trace_id. Génère un nouveau si non fourni."""
    if trace_id is None:
        trace_id = str(uuid.uuid4())[:8]
    _trace_id.set(trace_id)
    return trace_id


class JSONFormatter(logging.Formatter):
    """Formatter qui produit des logs en JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        trace_id = get_trace_id()
        if trace_id:
            log_data["trace_id"] = trace_id

        for key in _RECORD_KEYS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data") and record.extra_data:
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Logger structuré avec méthodes helper pour le contexte scraping.
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: bool = False, **fields):
        """
        Les champs connus (_RECORD_KEYS) deviennent des attributs du record,
        les autres sont regroupés sous `extra`. Les valeurs None sont omises.
        """
        if not self._logger.isEnabledFor(level):
            return

        record_extra: Dict[str, Any] = {}
        extra_data: Dict[str, Any] = {}
        for key, value in fields.items():
            if value is None:
                continue
            if key == "url":
                value = value[:200]
            elif key == "duration_ms":
                value = round(value, 2)
            (record_extra if key in _RECORD_KEYS else extra_data)[key] = value
        if extra_data:
            record_extra["extra_data"] = extra_data

        self._logger.log(level, message, exc_info=exc_info, extra=record_extra)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, exc_info: bool = True, **kwargs):
        self._log(logging.ERROR, message, exc_info=exc_info, **kwargs)

    # Méthodes spécialisées pour le pipeline

    def acquire_start(self, url: str, platform: str):
        """Log le début d'une acquisition."""
        self.info("Acquisition started", url=url, platform=platform)

    def acquire_success(self, url: str, platform: str, method: str, duration_ms: float):
        """Log une acquisition réussie."""
        self.info(
            "Acquisition successful",
            url=url,
            platform=platform,
            method=method,
            duration_ms=duration_ms,
        )

    def acquire_error(self, url: str, error: BaseException, duration_ms: Optional[float] = None):
        """Log une acquisition en échec."""
        self.error(
            f"Acquisition failed: {error}",
            url=url,
            duration_ms=duration_ms,
            error_type=type(error).__name__,
            status_code=getattr(error, "status_code", None),
            exc_info=False,  # L'erreur est déjà dans le message
        )


def setup_logging(level: str = "INFO"):
    """
    Configure le logging pour l'application.

    Args:
        level: Niveau de log (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    # Réduire le bruit des libs externes
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def apply_log_level(log_level: str) -> None:
    """
    Applique le logLevel de la config (none|basic|detailed) aux loggers `app`,
    stdlib et loguru.
    """
    level = LOG_LEVELS.get(log_level, logging.INFO)
    logging.getLogger("app").setLevel(level)
    if log_level == "none":
        loguru_logger.disable("app")
    else:
        loguru_logger.enable("app")


def get_logger(name: str) -> StructuredLogger:
    """Obtient un logger structuré."""
    return StructuredLogger(name)
