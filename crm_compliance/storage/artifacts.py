"""File-based store for export artifacts."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Directory of export artifacts, written atomically."""

    def __init__(self, export_dir: Union[str, Path]):
        """
        Initialize the artifact store.

        Args:
            export_dir: Directory for export files, created on first write
        """
        self.export_dir = Path(export_dir)

    def path(self, name: str) -> Path:
        """Resolve an artifact name inside the export directory."""
        # Artifact names are generated internally; refuse anything that escapes
        candidate = (self.export_dir / Path(name).name).resolve()
        if candidate.parent != self.export_dir.resolve():
            raise ValueError(f"Invalid artifact name: {name}")
        return candidate

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def write(self, name: str, content: Union[str, bytes]) -> int:
        """
        Write an artifact via a temporary file and rename.

        Args:
            name: Artifact file name
            content: Text (UTF-8 encoded) or bytes

        Returns:
            Size of the artifact in bytes
        """
        self.export_dir.mkdir(parents=True, exist_ok=True)
        target = self.path(name)
        data = content.encode("utf-8") if isinstance(content, str) else content

        fd, tmp_name = tempfile.mkstemp(dir=str(self.export_dir), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        return len(data)

    def read(self, name: str) -> bytes:
        return self.path(name).read_bytes()

    def remove(self, name: str) -> bool:
        """
        Remove an artifact.

        Returns:
            True if a file was removed
        """
        target = self.path(name)
        if not target.exists():
            return False
        target.unlink()
        logger.debug(f"Removed export artifact {target}")
        return True
