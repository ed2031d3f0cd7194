import hashlib
import hmac
import time
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import quote, urlencode

from deckflow.errors import ResourceNotFound, TransientInfraError


class ObjectStorage:
    """Filesystem-backed object store with HMAC-signed download URLs."""

    def __init__(self, root: Path, *, public_base_url: str, signing_secret: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret.encode("utf-8")

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes the storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            path.with_name(path.name + ".content-type").write_text(content_type, encoding="utf-8")
        except OSError as exc:
            raise TransientInfraError(f"Upload failed for {key}: {exc}", code="UPLOAD_ERROR") from exc
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ResourceNotFound(f"Object not found: {key}")
        return path.read_bytes()

    def signed_url(self, key: str, expires_in: int) -> tuple[str, datetime]:
        expires_at = int(time.time()) + int(expires_in)
        signature = hmac.new(self.signing_secret, f"{key}:{expires_at}".encode("utf-8"), hashlib.sha256).hexdigest()
        query = urlencode({"expires": expires_at, "signature": signature})
        url = f"{self.public_base_url}/files/{quote(key)}?{query}"
        return url, datetime.utcnow() + timedelta(seconds=int(expires_in))


def export_key(deck_id: str, fmt: str) -> str:
    stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    return f"exports/{deck_id}/{stamp}.{fmt.lstrip('.')}"
