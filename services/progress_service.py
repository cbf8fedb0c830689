"""
進度服務：由交易狀態推導進度百分比與下一步動作

交易的標準路徑：
    pending_payment -> awaiting_payment_verification -> paid
    -> awaiting_shipping_verification -> shipped -> goods_received -> completed

- 駁回狀態回到「可以重新上傳」的位置（payment_rejected = pending_payment，shipping_rejected = paid）
- delivered 是 goods_received 的舊名稱，一律視為 goods_received
- cancelled / disputed 不在路徑上，進度為 0

純函式，沒有副作用
"""
from models import TransactionStatus

CANONICAL_PATH = [
    TransactionStatus.PENDING_PAYMENT,
    TransactionStatus.AWAITING_PAYMENT_VERIFICATION,
    TransactionStatus.PAID,
    TransactionStatus.AWAITING_SHIPPING_VERIFICATION,
    TransactionStatus.SHIPPED,
    TransactionStatus.GOODS_RECEIVED,
    TransactionStatus.COMPLETED,
]

_PATH_ALIASES = {
    TransactionStatus.PAYMENT_REJECTED: TransactionStatus.PENDING_PAYMENT,
    TransactionStatus.SHIPPING_REJECTED: TransactionStatus.PAID,
    TransactionStatus.DELIVERED: TransactionStatus.GOODS_RECEIVED,
}

_CURRENT_ACTIONS = {
    TransactionStatus.PENDING_PAYMENT: "Buyer to upload payment proof",
    TransactionStatus.PAYMENT_REJECTED: "Buyer to upload a new payment proof",
    TransactionStatus.AWAITING_PAYMENT_VERIFICATION: "GM to verify payment proof",
    TransactionStatus.PAID: "Seller to ship goods and upload shipping receipt",
    TransactionStatus.SHIPPING_REJECTED: "Seller to upload a new shipping receipt",
    TransactionStatus.AWAITING_SHIPPING_VERIFICATION: "GM to verify shipping receipt",
    TransactionStatus.SHIPPED: "Buyer to confirm receipt of goods",
    TransactionStatus.GOODS_RECEIVED: "GM to release funds",
    TransactionStatus.DELIVERED: "GM to release funds",
    TransactionStatus.COMPLETED: "Transaction completed",
    TransactionStatus.CANCELLED: "Transaction cancelled",
    TransactionStatus.DISPUTED: "Dispute under GM review",
}


def canonical_status(status: TransactionStatus) -> TransactionStatus:
    """
    把狀態換成標準路徑上的對應位置

    範例：
        canonical_status(PAYMENT_REJECTED) -> PENDING_PAYMENT
        canonical_status(DELIVERED) -> GOODS_RECEIVED
        canonical_status(PAID) -> PAID
    """
    status = TransactionStatus(status)
    return _PATH_ALIASES.get(status, status)


def progress_percentage(status: TransactionStatus) -> int:
    """
    進度百分比（0-100）

    規則：
    - 標準路徑上第 i 個狀態 = round(i / 6 * 100)
    - 不在路徑上的狀態（cancelled / disputed）= 0

    範例：
        progress_percentage(PENDING_PAYMENT) -> 0
        progress_percentage(PAID) -> 33
        progress_percentage(SHIPPED) -> 67
        progress_percentage(COMPLETED) -> 100
    """
    status = canonical_status(status)
    if status not in CANONICAL_PATH:
        return 0
    index = CANONICAL_PATH.index(status)
    return round(index / (len(CANONICAL_PATH) - 1) * 100)


def current_action(status: TransactionStatus) -> str:
    """下一個應該行動的人要做什麼（給畫面顯示）"""
    return _CURRENT_ACTIONS[TransactionStatus(status)]
