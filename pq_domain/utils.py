"""
Utility Functions Module

Contains common utility functions for configuration loading, logging setup, file management,
locking and progress reporting.
"""

import os
import yaml
import logging
import json
import threading
import datetime
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Any, Optional, Union


DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                   "configs", "default_config.yaml")


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load YAML configuration file"""
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
        return config or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Config file format error: {e}")


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Setup logging configuration"""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers = [logging.StreamHandler()]
    if log_file:
        ensure_dir(os.path.dirname(log_file))
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=log_format,
        handlers=handlers
    )


def ensure_dir(dir_path: Union[str, Path]) -> None:
    """Ensure directory exists, create if not"""
    if dir_path:
        Path(dir_path).mkdir(parents=True, exist_ok=True)


def save_json(data: Dict[str, Any], filepath: Union[str, Path]) -> None:
    """Save data to JSON file"""
    ensure_dir(os.path.dirname(filepath))
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def load_json(filepath: Union[str, Path]) -> Dict[str, Any]:
    """Load JSON file"""
    with open(filepath, 'r', encoding='utf-8') as f:
        return json.load(f)


def format_time(seconds: float) -> str:
    """Format time duration"""
    if seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        minutes = seconds // 60
        secs = seconds % 60
        return f"{int(minutes)}m {secs:.2f}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        secs = seconds % 60
        return f"{int(hours)}h {int(minutes)}m {secs:.2f}s"


class ReadWriteLock:
    """Shared-read / exclusive-write lock.

    Any number of readers may hold the lock at once; a writer waits for the
    readers to drain and blocks new readers while it is waiting, so a steady
    stream of readers cannot starve it. Not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class ProgressTracker:
    """Progress tracker for long-running operations"""

    def __init__(self, total: int, description: str = "Processing"):
        """Initialize progress tracker"""
        self.total = total
        self.current = 0
        self.description = description
        self.start_time = datetime.datetime.now()
        self.logger = logging.getLogger(__name__)

    def update(self, step: int = 1) -> None:
        """Update progress"""
        self.current += step
        percentage = (self.current / self.total) * 100 if self.total else 100.0

        elapsed = (datetime.datetime.now() - self.start_time).total_seconds()
        if self.current > 0:
            eta = elapsed * max(self.total - self.current, 0) / self.current
            eta_str = format_time(eta)
        else:
            eta_str = "Unknown"

        self.logger.debug(f"{self.description}: {self.current}/{self.total} "
                          f"({percentage:.1f}%) - ETA: {eta_str}")

    def finish(self) -> None:
        """Finish progress tracking"""
        elapsed = (datetime.datetime.now() - self.start_time).total_seconds()
        self.logger.info(f"{self.description} completed, time: {format_time(elapsed)}")
