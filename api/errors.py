"""
把業務異常轉成 HTTPException

對應規則：
- IntegrityViolation（對象不存在） -> 404
- Unauthorized（沒有權限） -> 403
- InvalidEvidenceFile（檔案不合格） -> 422
- 其他 PreconditionViolation（狀態不對、已被佔用...） -> 409

回傳內容固定為 {"detail": {"kind": ..., "reason": ...}}，前端用 kind 判斷
"""
from fastapi import HTTPException

from schemas import ErrorResponse
from core.exceptions import (
    EscrowException,
    IntegrityViolation,
    Unauthorized,
    InvalidEvidenceFile,
)

# 給 APIRouter(responses=...) 用，讓 OpenAPI 文件列出錯誤格式
ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Caller is not allowed to do this"},
    404: {"model": ErrorResponse, "description": "Room, occupant, transaction or file not found"},
    409: {"model": ErrorResponse, "description": "Request conflicts with the current state"},
}


def status_code_for(exc: EscrowException) -> int:
    if isinstance(exc, IntegrityViolation):
        return 404
    if isinstance(exc, Unauthorized):
        return 403
    if isinstance(exc, InvalidEvidenceFile):
        return 422
    return 409


def to_http_exception(exc: EscrowException) -> HTTPException:
    return HTTPException(
        status_code=status_code_for(exc),
        detail={"kind": exc.kind, "reason": exc.reason}
    )
