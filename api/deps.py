"""
FastAPI dependencies 共用工具

- get_evidence_store：檔案儲存位置（測試時可以 override 成 InMemoryEvidenceStore）
- get_current_arbiter：從 X-Arbiter-Id header 取得 GM
- get_session_token：從 X-Session-Token header 取得參與者的 token

GM 的登入驗證不在這個服務內，header 由前面的 gateway 帶入
"""
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from models import Arbiter
from core.exceptions import EscrowException
from services.arbiter_service import require_active_arbiter
from services.evidence_store import EvidenceStore, LocalEvidenceStore
from api.errors import to_http_exception


@lru_cache()
def get_evidence_store() -> EvidenceStore:
    return LocalEvidenceStore(get_settings().evidence_root)


def get_current_arbiter(
    x_arbiter_id: Optional[UUID] = Header(None),
    db: Session = Depends(get_db)
) -> Arbiter:
    try:
        return require_active_arbiter(db, x_arbiter_id)
    except EscrowException as e:
        raise to_http_exception(e)


def get_session_token(x_session_token: Optional[str] = Header(None)) -> Optional[str]:
    return x_session_token
