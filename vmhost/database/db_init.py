from .database import engine, Base
from . import models  # noqa: F401  모델을 Base.metadata에 등록


def initialize_db(bind=None):
    """
    VM/백업/스냅샷/템플릿 테이블을 생성합니다. 이미 존재하는 테이블은 건드리지 않습니다.

    Args:
        bind: 테이블을 생성할 엔진. 생략하면 설정의 기본 엔진을 사용합니다.
    """
    target = bind if bind is not None else engine
    print(f"DB 초기화 중 ({target.url})...")
    Base.metadata.create_all(bind=target)
    print("테이블 생성 완료.")


if __name__ == '__main__':
    initialize_db()
