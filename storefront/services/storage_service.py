from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from storefront.config import Config
from storefront.errors import StoreError, ValidationError


class LocalObjectStorage:
    """Stores uploads on disk under the static folder and hands back a public URL."""

    def __init__(
        self,
        upload_dir: Optional[Path] = None,
        public_prefix: Optional[str] = None,
        allowed_extensions: Optional[Iterable[str]] = None,
    ) -> None:
        self.upload_dir = Path(upload_dir or Config.UPLOAD_DIR)
        self.public_prefix = (
            public_prefix
            if public_prefix is not None
            else f"{Config.PUBLIC_BASE_URL.rstrip('/')}/static/{Config.UPLOAD_SUBDIR.strip('/')}"
        )
        self.allowed_extensions = {ext.lower() for ext in (allowed_extensions or Config.UPLOAD_ALLOWED_EXTENSIONS)}
        self.logger = logging.getLogger(__name__)

    def save(self, upload: FileStorage) -> str:
        filename = secure_filename(upload.filename or "")
        if not filename or "." not in filename:
            raise ValidationError("Upload must have a file name with an extension")
        extension = filename.rsplit(".", 1)[1].lower()
        if extension not in self.allowed_extensions:
            raise ValidationError(f"File type .{extension} is not allowed")

        stored_name = f"{uuid4().hex}_{filename}"
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            upload.save(self.upload_dir / stored_name)
        except OSError as exc:
            raise StoreError(f"Could not store upload: {exc}") from exc

        url = f"{self.public_prefix.rstrip('/')}/{stored_name}"
        self.logger.info("Stored upload %s", stored_name, extra={"url": url})
        return url
