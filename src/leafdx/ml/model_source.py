"""Model artifact resolution: local file or Hugging Face Hub download.

The classifier only needs model bytes; this module is the default way of
producing them from configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download

from leafdx.exceptions import LoadError

if TYPE_CHECKING:
    from leafdx.config import Settings

logger = logging.getLogger(__name__)


class ModelSource:
    """Resolves the configured model artifact to a file and reads it."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._resolved: Path | None = None

    def ensure_available(self) -> Path:
        """Return a local path to the model, downloading it if needed.

        Raises:
            LoadError: If a configured local path does not exist or the
                download fails.
        """
        if self._settings.model_path is not None:
            path = Path(self._settings.model_path)
            if not path.is_file():
                raise LoadError(f"Model file not found: {path}")
            return path

        if self._resolved is not None and self._resolved.exists():
            return self._resolved

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=self._settings.model_repo_id,
                    filename=self._settings.model_filename,
                    revision=self._settings.model_revision,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise LoadError(
                f"Cannot download {self._settings.model_filename} from {self._settings.model_repo_id}: {exc}"
            ) from exc

        self._resolved = downloaded
        logger.info("Downloaded %s to %s", self._settings.model_filename, downloaded)
        return downloaded

    def read_bytes(self) -> bytes:
        """Return the serialized model."""
        path = self.ensure_available()
        try:
            return path.read_bytes()
        except OSError as exc:
            raise LoadError(f"Cannot read model file {path}: {exc}") from exc
