from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from datetime import datetime
from typing import Optional


class LogManager:
    """
    Logger del benchmark: un figlio di 'iobench' per ogni componente
    (iobench.benchmark, iobench.adapters, iobench.chunked_reader, ...).

    Alla prima istanza configura una sola volta il logger base:
    - file UTF-8 giornaliero 'logs/iobench_YYYYMMDD.log' accanto al pacchetto,
      a livello DEBUG (diagnostiche di inferenza, chunk letti, prove fallite);
    - console a livello INFO, regolabile da CLI con --quiet/--verbose.

    Gli handler già presenti non vengono duplicati: i moduli possono creare
    il proprio LogManager a livello di import senza effetti collaterali.
    """

    _configured: bool = False
    _base_logger_name: str = "iobench"
    _logfile_path: Optional[Path] = None

    CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
    FILE_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s.%(funcName)s:%(lineno)d | %(message)s"
    DATE_FORMAT = "%H:%M:%S"

    def __init__(self, component: str = "benchmark", level: int = logging.DEBUG) -> None:
        # "iobench.chunked_reader" e "chunked_reader" indicano lo stesso componente
        name = component.strip()
        prefix = self._base_logger_name + "."
        if name.startswith(prefix):
            name = name[len(prefix):]
        self.component = name or "benchmark"
        self.level = level
        self._ensure_configured()

    @classmethod
    def _logs_dir(cls) -> Path:
        # .../iobench/logger.py -> <root>/logs
        return Path(__file__).resolve().parents[1] / "logs"

    @classmethod
    def _ensure_configured(cls) -> None:
        if cls._configured:
            return

        logs_dir = cls._logs_dir()
        logs_dir.mkdir(parents=True, exist_ok=True)
        cls._logfile_path = logs_dir / f"iobench_{datetime.now():%Y%m%d}.log"

        base_logger = logging.getLogger(cls._base_logger_name)
        base_logger.setLevel(logging.DEBUG)
        base_logger.propagate = False

        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == str(cls._logfile_path)
            for h in base_logger.handlers
        )
        if not has_file:
            fh = logging.FileHandler(cls._logfile_path, encoding="utf-8")
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(cls.FILE_FORMAT))
            base_logger.addHandler(fh)

        if cls._console_handler(base_logger) is None:
            sh = logging.StreamHandler()
            sh.setLevel(logging.INFO)
            sh.setFormatter(logging.Formatter(cls.CONSOLE_FORMAT, datefmt=cls.DATE_FORMAT))
            base_logger.addHandler(sh)

        cls._configured = True
        base_logger.debug("Log del benchmark su %s", cls._logfile_path)

    @staticmethod
    def _console_handler(base: Logger) -> Optional[logging.Handler]:
        for handler in base.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                return handler
        return None

    def get_logger(self, level: Optional[int] = None) -> Logger:
        logger = logging.getLogger(self._base_logger_name).getChild(self.component)
        logger.setLevel(level if level is not None else self.level)
        return logger

    @classmethod
    def logfile_path(cls) -> Optional[Path]:
        return cls._logfile_path

    @classmethod
    def set_console_level(cls, level: int) -> None:
        """Verbosità della sola console; il file resta a DEBUG."""
        cls._ensure_configured()
        handler = cls._console_handler(logging.getLogger(cls._base_logger_name))
        if handler is not None:
            handler.setLevel(level)
