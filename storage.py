"""Almacenamiento de archivos opacos (estructuras de entrada y resultados).

Los bytes se guardan en disco bajo ``storage_dir/<storage_id>`` y los metadatos
en la tabla StoredFile. Las descargas se sirven mediante URLs firmadas.
"""

import hashlib
from pathlib import Path
from typing import Optional
from urllib.parse import quote
import structlog
from models import StoredFile
from database import DBSession
from config import get_settings
from security import create_download_token

logger = structlog.get_logger(__name__)


class StorageError(Exception):
    """Archivo inexistente o ilegible en el almacenamiento."""


class FileStorage:
    """Agrupa las operaciones de guardado, lectura y URLs firmadas."""
    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else get_settings().storage_dir

    # _path: Ruta en disco de un blob; el id es siempre un uuid generado por nosotros.
    def _path(self, storage_id: str) -> Path:
        return self.root / storage_id

    def store(self, data: bytes, filename: str, content_type: Optional[str] = None,
              owner_id: Optional[int] = None) -> StoredFile:
        """Guarda los bytes y registra sus metadatos. Retorna el StoredFile creado."""
        self.root.mkdir(parents=True, exist_ok=True)
        record = StoredFile(
            filename=filename,
            content_type=content_type or 'application/octet-stream',
            size=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            owner_id=owner_id,
        )
        self._path(record.id).write_bytes(data)
        with DBSession() as s:
            s.add(record)
            s.commit()
            s.refresh(record)
        logger.info("file_stored", storage_id=record.id, filename=filename, size=record.size)
        return record

    def get(self, storage_id: str) -> Optional[StoredFile]:
        with DBSession() as s:
            return s.get(StoredFile, storage_id)

    def read(self, storage_id: str) -> bytes:
        """Lee los bytes de un archivo almacenado o lanza StorageError."""
        record = self.get(storage_id)
        path = self._path(storage_id)
        if record is None or not path.exists():
            raise StorageError(f"Stored file {storage_id} not found")
        return path.read_bytes()

    # get_url: URL absoluta y firmada para descargar el archivo, o None si no existe.
    def get_url(self, storage_id: str) -> Optional[str]:
        if self.get(storage_id) is None:
            return None
        token = create_download_token(storage_id)
        base = get_settings().public_base_url
        return f"{base}/storage/{quote(storage_id)}?token={token}"


# get_storage: Instancia por defecto, usada como dependencia en la API.
def get_storage() -> FileStorage:
    return FileStorage()
