from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from vmhost.config import get_settings


def create_engine_for(url: str):
    """
    주어진 URL로 SQLAlchemy 엔진을 생성합니다.

    SQLite는 요청 스레드와 백업 워커 스레드가 같은 DB 파일을 공유하므로
    check_same_thread를 끄고, 쓰기 잠금 대기 시간을 넉넉히 줍니다.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args)


def create_session_factory(engine):
    # autocommit=False, autoflush=False: 명시적으로 commit을 호출해야 DB에 반영됩니다.
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# 데이터베이스 연결 문자열은 VMHOST_DATABASE_URL 설정에서 가져옵니다.
engine = create_engine_for(get_settings().database_url)

SessionLocal = create_session_factory(engine)

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()
