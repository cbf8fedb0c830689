"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

每個異常都帶有：
- kind：穩定的錯誤代碼（API 回傳給前端，不會隨訊息文字改變）
- reason：給人看的說明

分類：
- PreconditionViolation：預期中的拒絕（角色已被佔用、狀態不對...），不會有任何副作用
- IntegrityViolation：操作的對象根本不存在，不可重試
- Unauthorized：呼叫者沒有權限執行這個動作
"""


class EscrowException(Exception):
    """所有 escrow 異常的基類"""
    kind = "EscrowError"
    default_reason = "Escrow operation failed"

    def __init__(self, reason=None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class PreconditionViolation(EscrowException):
    kind = "PreconditionViolation"


class IntegrityViolation(EscrowException):
    kind = "IntegrityViolation"


class Unauthorized(EscrowException):
    kind = "Unauthorized"


# ============ 不存在的實體（Fatal） ============

class RoomNotFound(IntegrityViolation):
    """房間不存在"""
    kind = "RoomNotFound"

    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class OccupantNotFound(IntegrityViolation):
    """房間內找不到這個參與者"""
    kind = "OccupantNotFound"

    def __init__(self, occupant_ref):
        self.occupant_ref = occupant_ref
        super().__init__(f"Occupant {occupant_ref} not found")


class TransactionNotFound(IntegrityViolation):
    """交易不存在"""
    kind = "TransactionNotFound"

    def __init__(self, transaction_ref):
        self.transaction_ref = transaction_ref
        super().__init__(f"Transaction {transaction_ref} not found")


class EvidenceNotFound(IntegrityViolation):
    """證明檔案不存在"""
    kind = "EvidenceNotFound"

    def __init__(self, file_id):
        self.file_id = file_id
        super().__init__(f"Evidence file {file_id} not found")


# ============ Room / Slot 相關異常 ============

class RoleUnavailable(PreconditionViolation):
    """角色目前不能加入（已被佔用，或賣家在買家之前加入）"""
    kind = "RoleUnavailable"
    default_reason = "Room is not available for this role"


class AlreadyOccupyingAnotherRoom(PreconditionViolation):
    """參與者已經在另一個進行中的房間"""
    kind = "AlreadyOccupyingAnotherRoom"
    default_reason = "Participant already occupies a slot in another active room"


class DuplicateRole(PreconditionViolation):
    """參與者已經在這個房間佔有一個角色"""
    kind = "DuplicateRole"
    default_reason = "Participant already holds a role in this room"


class RoomExpired(PreconditionViolation):
    """房間已過期"""
    kind = "RoomExpired"
    default_reason = "Room has expired"


class ParticipantLocked(PreconditionViolation):
    """參與者還綁在進行中的交易上，不能離開"""
    kind = "ParticipantLocked"
    default_reason = "Participant is bound to an active transaction"


# ============ 交易狀態相關異常 ============

class InvalidStateTransition(PreconditionViolation):
    """非法的狀態轉換"""
    kind = "InvalidStateTransition"


class ActiveTransactionExists(PreconditionViolation):
    """房間已經有一筆進行中的交易"""
    kind = "ActiveTransactionExists"
    default_reason = "Room already has an active transaction"


class TransactionImmutable(PreconditionViolation):
    """交易已完成或已取消，不能再修改"""
    kind = "TransactionImmutable"
    default_reason = "Transaction is completed or cancelled"


class NotAwaitingPaymentVerification(PreconditionViolation):
    kind = "NotAwaitingPaymentVerification"
    default_reason = "Transaction is not awaiting payment verification"


class NotAwaitingShippingVerification(PreconditionViolation):
    kind = "NotAwaitingShippingVerification"
    default_reason = "Transaction is not awaiting shipping verification"


class NotShipped(PreconditionViolation):
    kind = "NotShipped"
    default_reason = "Goods have not been marked as shipped"


class NotReadyForRelease(PreconditionViolation):
    kind = "NotReadyForRelease"
    default_reason = "Transaction is not ready for fund release"


class MissingReason(PreconditionViolation):
    kind = "MissingReason"
    default_reason = "A reason is required"


# ============ 證明檔案相關異常 ============

class EvidenceAlreadyPending(PreconditionViolation):
    """同一種類的檔案已經有一份在等待審核"""
    kind = "EvidenceAlreadyPending"
    default_reason = "A file of this type is already pending verification"


class EvidenceNotExpected(PreconditionViolation):
    """目前交易狀態不接受這種檔案"""
    kind = "EvidenceNotExpected"
    default_reason = "Transaction is not accepting this kind of evidence"


class InvalidEvidenceFile(PreconditionViolation):
    """檔案太大或格式不允許"""
    kind = "InvalidEvidenceFile"
    default_reason = "Evidence file is not acceptable"


class AlreadyProcessed(PreconditionViolation):
    """檔案已經審核過（verified / rejected 不能再改）"""
    kind = "AlreadyProcessed"
    default_reason = "This file has already been processed"


class WrongType(PreconditionViolation):
    """檔案種類與審核步驟不符"""
    kind = "WrongType"
    default_reason = "File type does not match this verification step"


# ============ 權限相關異常 ============

class NotArbiter(Unauthorized):
    """只有啟用中的 GM 可以執行"""
    kind = "NotArbiter"
    default_reason = "GM access required"


class NotBuyer(Unauthorized):
    kind = "NotBuyer"
    default_reason = "Only the buyer may perform this action"


class UploaderNotPermitted(Unauthorized):
    kind = "UploaderNotPermitted"
    default_reason = "This role may not upload this kind of file"
