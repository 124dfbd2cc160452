# storage_blob.py – 백업 폴더를 Blob 컨테이너로 업로드 (CI 보관용)
import logging
import mimetypes
import os
from typing import List, Optional

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import BlobServiceClient, ContentSettings

from config import CONFIG

logger = logging.getLogger(__name__)


def _container(container: Optional[str] = None, connection_string: Optional[str] = None):
    conn = connection_string or CONFIG.get("AZURE_STORAGE_CONNECTION_STRING")
    if not conn:
        raise RuntimeError("AZURE_STORAGE_CONNECTION_STRING not configured.")
    svc = BlobServiceClient.from_connection_string(conn)
    cc = svc.get_container_client(container or CONFIG.get("BACKUP_CONTAINER") or "purview-backups")
    try:
        cc.create_container()
    except ResourceExistsError:
        pass
    return cc


def upload_directory(local_dir: str, prefix: str, container: Optional[str] = None,
                     connection_string: Optional[str] = None) -> List[str]:
    """local_dir 아래 모든 파일을 <prefix>/<상대경로> 로 업로드하고 blob 이름 목록 반환"""
    cc = _container(container, connection_string)
    uploaded = []
    for root, _, files in os.walk(local_dir):
        for fname in sorted(files):
            full = os.path.join(root, fname)
            rel = os.path.relpath(full, local_dir).replace(os.sep, "/")
            blob_name = f"{prefix.strip('/')}/{rel}" if prefix else rel
            ctype = mimetypes.guess_type(fname)[0] or "application/octet-stream"
            with open(full, "rb") as f:
                cc.get_blob_client(blob_name).upload_blob(f, overwrite=True,
                                                          content_settings=ContentSettings(content_type=ctype))
            uploaded.append(blob_name)
    logger.info("uploaded %d file(s) to %s/%s", len(uploaded), cc.container_name, prefix)
    return uploaded
