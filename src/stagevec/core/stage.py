"""Local-directory file stage: listing, reading, and scoped URLs."""

import hashlib
import hmac
import logging
import time
from pathlib import Path, PurePosixPath
from typing import BinaryIO, List, Optional
from urllib.parse import parse_qs, quote, unquote, urlparse

from .errors import DocumentReadError, ScopedUrlError
from .models import DocumentRecord

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".pdf", ".txt", ".md")


def calculate_sha256(file_path: Path) -> str:
    """Calculate SHA256 hash of a file."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


class FileStage:
    """A directory of source files addressed by stage-relative POSIX paths."""

    def __init__(self, root: Path, name: str = "docs", signing_key: str = "",
                 url_ttl: int = 3600, suffixes: tuple = SUPPORTED_SUFFIXES):
        self.root = Path(root).resolve()
        self.name = name
        self.signing_key = signing_key.encode("utf-8")
        self.url_ttl = url_ttl
        self.suffixes = suffixes

    @classmethod
    def from_config(cls, config) -> "FileStage":
        return cls(
            Path(config.stage_dir),
            name=config.stage_name,
            signing_key=config.signing_key,
            url_ttl=config.url_ttl,
        )

    def _resolve(self, path: str) -> Path:
        full_path = (self.root / path).resolve()
        if full_path != self.root and self.root not in full_path.parents:
            raise DocumentReadError(path, "path escapes the stage root")
        return full_path

    def list_files(self, pattern: str = "**/*") -> List[DocumentRecord]:
        """List supported files under the stage root, sorted by path."""
        if not self.root.is_dir():
            logger.warning(f"Stage directory {self.root} does not exist")
            return []

        records = []
        for file_path in sorted(self.root.glob(pattern)):
            if not file_path.is_file() or file_path.suffix.lower() not in self.suffixes:
                continue
            relative = file_path.relative_to(self.root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            rel_path = relative.as_posix()
            records.append(DocumentRecord(
                path=rel_path,
                size=file_path.stat().st_size,
                sha256=calculate_sha256(file_path),
                file_url=self.file_url(rel_path),
            ))

        logger.info(f"Found {len(records)} files in stage {self.name}")
        return records

    def open(self, path: str) -> BinaryIO:
        """Open a staged file for binary reading."""
        full_path = self._resolve(path)
        try:
            return open(full_path, "rb")
        except OSError as e:
            raise DocumentReadError(path, f"cannot open file: {e}") from e

    def read_bytes(self, path: str) -> bytes:
        with self.open(path) as f:
            return f.read()

    def file_url(self, path: str) -> str:
        """Permanent URL of a staged file."""
        return f"stage://{self.name}/{quote(PurePosixPath(path).as_posix())}"

    def _sign(self, path: str, expires: int) -> str:
        message = f"{self.name}\n{path}\n{expires}".encode("utf-8")
        return hmac.new(self.signing_key, message, hashlib.sha256).hexdigest()

    def build_scoped_url(self, path: str, expires_in: Optional[int] = None,
                         now: Optional[float] = None) -> str:
        """Build a time-limited, signed URL for a staged file."""
        self._resolve(path)
        issued = int(now if now is not None else time.time())
        expires = issued + (expires_in if expires_in is not None else self.url_ttl)
        signature = self._sign(path, expires)
        return f"{self.file_url(path)}?expires={expires}&signature={signature}"

    def verify_scoped_url(self, url: str, now: Optional[float] = None) -> str:
        """Return the stage path a scoped URL grants access to."""
        parsed = urlparse(url)
        if parsed.scheme != "stage" or parsed.netloc != self.name:
            raise ScopedUrlError(f"URL does not belong to stage {self.name}: {url}")

        params = parse_qs(parsed.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError) as e:
            raise ScopedUrlError(f"Malformed scoped URL: {url}") from e

        path = unquote(parsed.path.lstrip("/"))
        if not hmac.compare_digest(signature, self._sign(path, expires)):
            raise ScopedUrlError("Scoped URL signature mismatch")

        current = now if now is not None else time.time()
        if current > expires:
            raise ScopedUrlError(f"Scoped URL expired at {expires}")

        return path
