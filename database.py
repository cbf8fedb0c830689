from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from functools import wraps
import logging

from config import get_settings
from core.events import publish_pending_events, discard_pending_events
from core.exceptions import EscrowException

logger = logging.getLogger(__name__)

settings = get_settings()

# 巢狀 @transactional 的深度記錄在 session.info
_DEPTH_KEY = "transactional_depth"


def create_db_engine(database_url: str) -> Engine:
    """
    建立 Engine

    SQLite 沒有 SELECT ... FOR UPDATE，所以改用：
    - WAL 模式 + busy timeout
    - 每個 transaction 都以 BEGIN IMMEDIATE 開始（一開始就拿寫入鎖）
    這樣同一時間只會有一個寫入中的 transaction，等同 serializable

    PostgreSQL 則直接使用 core.locks 的行級鎖
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    # connect_args={"check_same_thread": False}：允許多執行緒共用連線池
    engine = create_engine(
        database_url,
        connect_args={
            "check_same_thread": False,
            "timeout": settings.sqlite_busy_timeout,
        },
        pool_pre_ping=True
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # 關掉 pysqlite 自己的 BEGIN，改由下面的 begin event 負責
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = create_db_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            room = with_room_lock(room_id, db).first()
            room.status = RoomStatus.IN_USE
            # 不需要手動 commit，decorator 會處理

    巢狀呼叫：
        - 只有最外層的 @transactional 會 commit / rollback
        - 內層呼叫直接加入外層的 transaction（全部成功或全部不生效）

    如果函式內發生異常：
        - 最外層自動 rollback，並丟棄尚未發送的事件
        - 異常會被重新拋出（讓上層處理）

    commit 成功後：
        - 發送這個 transaction 期間排入的 DomainEvent

    注意：
        - 第一個參數必須是 db: Session
        - 不要在函式內手動 commit（decorator 會處理）
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        # 找出 db session（可能在 args 或 kwargs）
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        depth = db.info.get(_DEPTH_KEY, 0)
        db.info[_DEPTH_KEY] = depth + 1
        try:
            result = func(*args, **kwargs)
            if depth == 0:
                db.commit()
        except EscrowException as e:
            if depth == 0:
                logger.info(f"{func.__name__} rejected: {e.kind}: {e.reason}")
                db.rollback()
                discard_pending_events(db)
            raise
        except IntegrityError as e:
            if depth == 0:
                logger.warning(f"Constraint conflict in {func.__name__}: {e.orig}")
                db.rollback()
                discard_pending_events(db)
            raise
        except Exception as e:
            if depth == 0:
                logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
                db.rollback()
                discard_pending_events(db)
            raise
        finally:
            db.info[_DEPTH_KEY] = depth

        if depth == 0:
            publish_pending_events(db)
        return result

    return wrapper
