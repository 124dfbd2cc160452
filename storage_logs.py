# storage_logs.py – 실행 이력(Azure Table) 기록 / 조회
from datetime import datetime, timezone
import logging
import uuid
from typing import Optional

from azure.core.exceptions import AzureError
from azure.data.tables import TableServiceClient, UpdateMode

from config import CONFIG

logger = logging.getLogger(__name__)


def _table_name() -> str:
    return CONFIG.get("ACTIVITY_TABLE_NAME") or "PurviewActivity"


def _get_table_client(connection_string: Optional[str] = None):
    conn = connection_string or CONFIG.get("AZURE_STORAGE_CONNECTION_STRING")
    if not conn:
        return None
    svc = TableServiceClient.from_connection_string(conn)
    return svc.create_table_if_not_exists(_table_name())


def log_activity(organization: str, operation: str, level: str, message: str,
                 connection_string: Optional[str] = None) -> bool:
    """
    실행 이력 1건 기록. 저장소 미설정이면 기록하지 않고 False.
    PartitionKey: 조직 도메인 (없으면 'default')
    RowKey: uuid4
    """
    try:
        table = _get_table_client(connection_string)
        if table is None:
            return False
        table.upsert_entity({
            "PartitionKey": organization or "default",
            "RowKey": str(uuid.uuid4()),
            "CreatedAt": datetime.now(timezone.utc).isoformat(),
            "Operation": operation,
            "Level": level,
            "Message": message[:32000],  # 과도한 길이 방지
        }, mode=UpdateMode.MERGE)
        return True
    except (AzureError, ValueError) as e:
        # 이력 기록 실패가 본 작업 결과를 바꾸지 않음 (잘못된 연결 문자열 포함)
        logger.warning("activity log write failed: %s", e)
        return False


def query_recent(organization: str = "default", top: int = 50, connection_string: Optional[str] = None):
    """조직별 최근 실행 이력 상위 N건"""
    table = _get_table_client(connection_string)
    if table is None:
        return []
    out = []
    for ent in table.query_entities("PartitionKey eq @pk", parameters={"pk": organization}):
        out.append(ent)
        if len(out) >= top:
            break
    out.sort(key=lambda x: x.get("CreatedAt", ""), reverse=True)
    return out
