import logging
import shutil
import time
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

logger = logging.getLogger(__name__)


class ImageStore:
    """Item images on local disk, referenced by bare file name."""

    def __init__(self, upload_dir: Path) -> None:
        self.upload_dir = Path(upload_dir)

    def path_for(self, reference: str) -> Path:
        # References are plain file names; never let one escape the upload dir.
        return self.upload_dir / Path(reference).name

    def save(self, upload: UploadFile) -> str:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        suffix = Path(upload.filename or "").suffix.lower()

        stamp = int(time.time() * 1000)
        target = self.upload_dir / f"{stamp}{suffix}"
        while target.exists():
            stamp += 1
            target = self.upload_dir / f"{stamp}{suffix}"

        with target.open("wb") as fh:
            shutil.copyfileobj(upload.file, fh)
        return target.name

    def delete(self, reference: Optional[str]) -> bool:
        if not reference:
            return False
        path = self.path_for(reference)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("Could not remove image %s", path)
            return False
        return True
