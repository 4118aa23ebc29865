"""
Retention policy enforcement for backup generations.

Keeps the newest N generation directories of a subtree and deletes the
rest. Generation names sort chronologically, so no timestamps are read
from the filesystem.
"""

import shutil
import logging
from pathlib import Path
from typing import List

from hostkeep.errors import RetentionFailed
from .destination import list_generations

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Prunes old generations from a destination subtree.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.deleted: List[Path] = []

    def keep_newest(self, directory, keep: int) -> List[Path]:
        """
        Delete all but the newest ``keep`` generations in ``directory``.

        Args:
            directory: Subtree holding generation directories
            keep: Number of generations to keep (>= 1)

        Returns:
            List of deleted generation paths

        Raises:
            ValueError: If keep is less than 1
            RetentionFailed: If any generation could not be deleted
        """
        if keep < 1:
            raise ValueError(f"Retention count must be at least 1, got {keep}")

        directory = Path(directory)
        if not directory.is_dir():
            logger.error(f"Directory does not exist: {directory}")
            raise RetentionFailed(f"Directory does not exist: {directory}")

        generations = list_generations(directory, newest_first=True)
        logger.info(f"Found {len(generations)} backup directories in {directory}, keeping {keep}")

        # Oldest first
        evict = list(reversed(generations[keep:]))
        return self._delete(evict)

    def clear_subtree(self, directory) -> List[Path]:
        """
        Delete every generation in ``directory``.

        Used when a full backup supersedes the incremental chain. Files such
        as the last-run marker are left alone.

        Args:
            directory: Subtree holding generation directories

        Returns:
            List of deleted generation paths
        """
        directory = Path(directory)
        if not directory.is_dir():
            return []
        return self._delete(list_generations(directory, newest_first=False))

    def _delete(self, generations: List[Path]) -> List[Path]:
        deleted = []
        errors = []

        for generation in generations:
            logger.info(f"Removing old backup: {generation}")
            try:
                shutil.rmtree(generation)
                deleted.append(generation)
            except OSError as e:
                message = f"Failed to remove {generation}: {e}"
                logger.error(message)
                errors.append(message)

        self.deleted.extend(deleted)

        if errors:
            raise RetentionFailed('; '.join(errors))

        return deleted


def keep_newest(directory, keep: int) -> List[Path]:
    """
    Enforce a keep-newest-N policy on one subtree.

    Returns:
        List of deleted generation paths
    """
    manager = RetentionManager()
    return manager.keep_newest(directory, keep)
