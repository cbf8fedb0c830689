"""
費用服務：交易金額計算

純計算邏輯：total = amount + commission + fee
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

CENT = Decimal("0.01")


def quantize(value) -> Decimal:
    """統一到小數點後兩位（四捨五入）"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_totals(
    amount,
    commission_rate,
    flat_fee,
    commission=None,
    fee=None
) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
    """
    計算一筆交易的金額組成

    規則：
    - commission 沒有指定時 = amount × commission_rate
    - fee 沒有指定時 = flat_fee
    - total = amount + commission + fee

    參數：
        amount: 商品金額
        commission_rate: 預設佣金比例（例如 0.02）
        flat_fee: 預設固定手續費
        commission: 指定佣金（選填）
        fee: 指定手續費（選填）

    返回：
        (amount, commission, fee, total)，全部是兩位小數的 Decimal

    異常：
        ValueError: 任何金額為負數

    範例：
        calculate_totals("100", "0.02", "1") -> (100.00, 2.00, 1.00, 103.00)
    """
    amount = quantize(amount)
    commission = quantize(commission) if commission is not None else quantize(amount * Decimal(commission_rate))
    fee = quantize(fee) if fee is not None else quantize(flat_fee)

    for label, value in (("amount", amount), ("commission", commission), ("fee", fee)):
        if value < 0:
            raise ValueError(f"{label} must not be negative, got {value}")

    return amount, commission, fee, amount + commission + fee


def format_amount(value: Optional[Decimal], currency: str) -> str:
    """顯示用：IDR 1,250,000.00"""
    if value is None:
        return f"{currency} -"
    return f"{currency} {quantize(value):,.2f}"
