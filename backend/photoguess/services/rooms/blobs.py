import os
import time
from typing import BinaryIO, Callable, Optional

from werkzeug.security import safe_join
from werkzeug.utils import secure_filename

from .errors import UploadError


def build_storage_path(room_id: str, filename: str, now: Optional[float] = None) -> str:
    millis = int((now if now is not None else time.time()) * 1000)
    name = secure_filename(filename or '') or 'photo'
    return f"rooms/{room_id}/{millis}_{name}"


class LocalBlobStore:
    """Uploaded images kept on local disk under ``root``.

    Stands in for a bucket: upload returns once the whole stream is on
    disk, ``url_for`` gives the public URL and ``delete`` removes the
    object by its storage path.
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(self, root: str, url_prefix: str = '/api/blobs'):
        self.root = os.path.abspath(root)
        self.url_prefix = url_prefix.rstrip('/')

    def full_path(self, path: str) -> str:
        full = safe_join(self.root, path)
        if full is None:
            raise UploadError(f"Invalid storage path: {path}")
        return full

    def upload(self, path: str, stream: BinaryIO, on_progress: Optional[Callable[[int], None]] = None) -> str:
        target = self.full_path(path)
        partial = target + '.part'
        written = 0
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(partial, 'wb') as out:
                while True:
                    chunk = stream.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
                    if on_progress:
                        on_progress(written)
            os.replace(partial, target)
        except OSError as exc:
            if os.path.exists(partial):
                os.remove(partial)
            raise UploadError(str(exc)) from exc
        return path

    def url_for(self, path: str) -> str:
        return f"{self.url_prefix}/{path}"

    def delete(self, path: str) -> None:
        os.remove(self.full_path(path))
