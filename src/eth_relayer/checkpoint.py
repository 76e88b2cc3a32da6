"""
File-backed scan checkpoints.

Each direction keeps the next block height to scan from in its own file
under the chain's data directory, stored as a decimal string.
"""

import logging
import os
import tempfile
from pathlib import Path

from .models import CheckpointDirection

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Loads and saves per-direction scan checkpoints for one chain."""

    def __init__(self, data_dir: Path, initial: dict[CheckpointDirection, int] | None = None):
        """
        Initialize the store.

        Args:
            data_dir: Directory holding ``send.cp`` and ``recv.cp``
            initial: Height returned for a direction that was never saved
        """
        self.data_dir = Path(data_dir)
        self.initial = initial or {}

    def path(self, direction: CheckpointDirection) -> Path:
        return self.data_dir / direction.value

    def load(self, direction: CheckpointDirection) -> int:
        """
        Return the saved checkpoint, or the initial height when none exists.

        Raises:
            ValueError: If the file does not hold a decimal height
        """
        path = self.path(direction)
        try:
            content = path.read_text().strip()
        except FileNotFoundError:
            return self.initial.get(direction, 1)
        try:
            return int(content)
        except ValueError:
            raise ValueError(f"Corrupt checkpoint file {path}: {content!r}") from None

    def save(self, direction: CheckpointDirection, height: int) -> None:
        """Atomically replace the checkpoint for ``direction``."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self.path(direction)
        fd, tmp = tempfile.mkstemp(dir=self.data_dir, prefix=f".{direction.value}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(str(height))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved {direction.name} checkpoint {height} to {path}")
