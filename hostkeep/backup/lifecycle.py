"""
Run lifecycle guard.

A RunContext owns every temporary path and every not-yet-complete
generation directory created during one operation, and removes them when
the operation ends: normally, with an exception, or because SIGINT/SIGTERM
arrived. Completed generations (no incomplete marker) are never touched.
"""

import os
import atexit
import shutil
import signal
import logging
import tempfile
import threading
from pathlib import Path
from typing import List

from hostkeep.errors import RunInterrupted
from .destination import is_incomplete

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _remove_path(path: Path):
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    else:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


class RunContext:
    """
    Scoped owner of temporary and partial paths for one operation.

    Usage:
        with RunContext('incremental') as context:
            generation = create_generation_dir(...)
            context.register_generation(generation)
            list_path = context.mkstemp(prefix='files-to-backup.')
            ...
    """

    def __init__(self, name: str = 'run', handle_signals: bool = True):
        self.name = name
        self.handle_signals = handle_signals
        self.temp_paths: List[Path] = []
        self.generations: List[Path] = []
        self._previous_handlers = {}

    def register_temp(self, path) -> Path:
        """Register a path that is always removed at the end of the run."""
        path = Path(path)
        self.temp_paths.append(path)
        return path

    def register_generation(self, path) -> Path:
        """Register a generation that is removed only if it is still incomplete."""
        path = Path(path)
        self.generations.append(path)
        return path

    def mkstemp(self, prefix: str = 'hostkeep.', suffix: str = '', dir=None) -> Path:
        """Create and register a temporary file; returns its path."""
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=dir)
        os.close(fd)
        return self.register_temp(name)

    def mkdtemp(self, prefix: str = 'hostkeep.', dir=None) -> Path:
        return self.register_temp(tempfile.mkdtemp(prefix=prefix, dir=dir))

    def cleanup(self):
        """Remove registered paths. Safe to call more than once."""
        while self.temp_paths:
            path = self.temp_paths.pop()
            _remove_path(path)

        while self.generations:
            generation = self.generations.pop()
            if generation.exists() and is_incomplete(generation):
                logger.warning(f"Removing incomplete generation: {generation}")
                shutil.rmtree(generation, ignore_errors=True)

    def _on_signal(self, signum, frame):
        logger.error(f"{self.name} interrupted by signal {signum}, cleaning up")
        raise RunInterrupted(signum)

    def _install_handlers(self):
        if not self.handle_signals or threading.current_thread() is not threading.main_thread():
            return
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers = {}

    def __enter__(self):
        self._install_handlers()
        atexit.register(self.cleanup)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.cleanup()
        finally:
            self._restore_handlers()
            atexit.unregister(self.cleanup)
        return False
