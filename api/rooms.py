"""
Room API Endpoints

職責：
1. GM 建立 / 延長 / 重設房間
2. buyer / seller 加入、離開房間
3. 查詢房間資訊、角色是否可加入、房間活動紀錄

所有業務邏輯集中在 RoomManager / RoomOccupancyManager，這裡只做轉換
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database import get_db
from models import Arbiter, Role, Room
from schemas import (
    RoomCreate,
    RoomExtend,
    RoomReset,
    RoomResponse,
    OccupantSummary,
    AvailabilityResponse,
    JoinRequest,
    JoinResponse,
    TimelineResponse,
    AuditEntryResponse,
)
from core.room_manager import RoomManager
from core.occupancy_manager import RoomOccupancyManager, ParticipantInfo
from core.exceptions import EscrowException
from services.history_service import get_room_timeline
from api.deps import get_current_arbiter, get_session_token
from api.errors import ERROR_RESPONSES, to_http_exception

router = APIRouter(prefix="/api/rooms", tags=["rooms"], responses=ERROR_RESPONSES)
logger = logging.getLogger(__name__)


def _room_response(db: Session, room: Room) -> RoomResponse:
    buyer = RoomOccupancyManager.get_occupant(db, room.id, Role.BUYER)
    seller = RoomOccupancyManager.get_occupant(db, room.id, Role.SELLER)
    return RoomResponse(
        room_id=room.id,
        room_number=room.room_number,
        status=room.status,
        expires_at=room.expires_at,
        is_expired=room.is_expired(),
        buyer=OccupantSummary.model_validate(buyer) if buyer else None,
        seller=OccupantSummary.model_validate(seller) if seller else None
    )


@router.post("", response_model=RoomResponse)
def create_room(
    room_data: RoomCreate,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    """建立房間（GM endpoint）"""
    try:
        room = RoomManager.create_room(db, arbiter=arbiter, ttl_days=room_data.ttl_days)
        return _room_response(db, room)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to create room: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_number}", response_model=RoomResponse)
def get_room(room_number: str, db: Session = Depends(get_db)):
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        return _room_response(db, room)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get room: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_number}/availability", response_model=AvailabilityResponse)
def check_availability(room_number: str, role: Role = Query(...), db: Session = Depends(get_db)):
    """
    角色是否可加入（只給畫面顯示用）

    真正的檢查在 join 裡，這裡回傳 True 不代表 join 一定成功
    """
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        available = RoomOccupancyManager.is_available(db, room.id, role)
        return AvailabilityResponse(room_id=room.id, role=role, available=available)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to check availability: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_number}/join", response_model=JoinResponse)
def join_room(room_number: str, join_data: JoinRequest, db: Session = Depends(get_db)):
    """
    加入房間（buyer / seller endpoint）

    流程：
    1. 透過房間編號找到 Room
    2. RoomOccupancyManager.join（原子操作）
    3. 返回 occupant 資訊與 session token（之後的請求放在 X-Session-Token）
    """
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        room_id = room.id
        # join 會自己開 transaction 並重試，先結束這次讀取
        db.rollback()

        occupant = RoomOccupancyManager.join(
            db,
            room_id,
            join_data.role,
            ParticipantInfo(
                name=join_data.name,
                contact=join_data.contact,
                identifier=join_data.identifier
            )
        )
        return JoinResponse(
            occupant_id=occupant.id,
            room_id=room_id,
            role=occupant.role,
            name=occupant.name,
            session_token=occupant.session_token
        )
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to join room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_number}/leave", response_model=RoomResponse)
def leave_room(
    room_number: str,
    session_token: Optional[str] = Depends(get_session_token),
    db: Session = Depends(get_db)
):
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        occupant = RoomOccupancyManager.authenticate(db, room.id, session_token)
        room = RoomOccupancyManager.leave(db, room.id, occupant.id)
        return _room_response(db, room)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to leave room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_number}/heartbeat")
def heartbeat(
    room_number: str,
    session_token: Optional[str] = Depends(get_session_token),
    db: Session = Depends(get_db)
):
    """更新參與者的上線狀態"""
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        occupant = RoomOccupancyManager.authenticate(db, room.id, session_token)
        occupant = RoomOccupancyManager.touch(db, occupant.id)
        return {"occupant_id": str(occupant.id), "last_seen": occupant.last_seen}
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to update heartbeat in room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_number}/offline")
def go_offline(
    room_number: str,
    session_token: Optional[str] = Depends(get_session_token),
    db: Session = Depends(get_db)
):
    """參與者關閉頁面時標記為離線（slot 仍保留）"""
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        occupant = RoomOccupancyManager.authenticate(db, room.id, session_token)
        occupant = RoomOccupancyManager.mark_offline(db, occupant.id)
        return {"occupant_id": str(occupant.id), "is_online": occupant.is_online}
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to mark occupant offline in room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_number}/activity", response_model=TimelineResponse)
def get_activity(
    room_number: str,
    limit: Optional[int] = Query(None, gt=0),
    db: Session = Depends(get_db)
):
    """房間活動紀錄（依序號排序）"""
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        entries = get_room_timeline(room.id, db, limit=limit)
        return TimelineResponse(
            room_id=room.id,
            entries=[AuditEntryResponse(**entry) for entry in entries]
        )
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get activity: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_number}/extend", response_model=RoomResponse)
def extend_room(
    room_number: str,
    extend_data: RoomExtend,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        room = RoomManager.extend_room(db, room.id, extend_data.days, arbiter=arbiter)
        return _room_response(db, room)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to extend room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_number}/reset", response_model=RoomResponse)
def reset_room(
    room_number: str,
    reset_data: RoomReset,
    arbiter: Arbiter = Depends(get_current_arbiter),
    db: Session = Depends(get_db)
):
    """
    GM 重設房間（移除所有參與者）

    房間內還有進行中的交易時會被拒絕（409），先取消交易
    """
    try:
        room = RoomManager.get_room_by_number(db, room_number)
        room = RoomManager.reset_room(db, room.id, arbiter, reset_data.reason)
        logger.info(f"Room {room_number} reset via API by GM {arbiter.id}")
        return _room_response(db, room)
    except EscrowException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to reset room {room_number}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
