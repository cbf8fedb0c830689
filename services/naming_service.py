"""
命名服務：生成 Room Number、Transaction Number 與 Session Token

純計算邏輯，不涉及狀態轉換
"""
import random
import secrets
import string
from datetime import datetime


def generate_room_number() -> str:
    """
    生成隨機的房間編號

    格式：R- + 6 位大寫字母或數字
    範例：R-7KQ2ZD

    注意：
    - 不檢查唯一性（由呼叫者負責）
    - 36^6 ≈ 21 億種可能，碰撞機率極低
    """
    return "R-" + ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))


def generate_transaction_number(now: datetime) -> str:
    """
    生成交易編號

    格式：TRX-YYYYMMDD-XXXXXXXX
    範例：TRX-20261016-4HF8QZ2P
    """
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=8))
    return f"TRX-{now.strftime('%Y%m%d')}-{suffix}"


def generate_session_token() -> str:
    """參與者的不透明 session token（URL-safe，32 bytes 熵）"""
    return secrets.token_urlsafe(32)
