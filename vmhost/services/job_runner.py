import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from vmhost.repositories.interfaces import IBackupRepository, IVMRepository
from vmhost.repositories.sqlalchemy import SqlalchemyBackupRepository, SqlalchemyVMRepository

logger = logging.getLogger(__name__)

JobTask = Callable[[IVMRepository, IBackupRepository], None]


class BackupJobRunner:
    """
    백업/복원 작업 본문을 요청 스레드 밖의 워커 풀에서 실행합니다.

    요청 경로와 워커 사이에 넘어가는 것은 작업 ID뿐이고, 워커는 자기 세션으로
    작업 레코드를 다시 읽습니다. 프로세스당 하나의 인스턴스를 공유해야 합니다.
    """

    def __init__(self, session_factory, max_workers: int = 2):
        """
        Args:
            session_factory: 워커마다 새 DB 세션을 만들 sessionmaker.
            max_workers: 동시에 실행할 최대 작업 수.
        """
        self.session_factory = session_factory
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backup-worker")

    def submit(self, task: JobTask) -> Future:
        return self.executor.submit(self._run, task)

    def _run(self, task: JobTask):
        session = self.session_factory()
        try:
            task(SqlalchemyVMRepository(session), SqlalchemyBackupRepository(session))
        except Exception:
            # 작업 본문이 스스로 실패를 기록하지 못한 경우. 호출자가 이미 떠났으므로 로그만 남깁니다.
            logger.exception("Unhandled error in background backup task")
        finally:
            session.close()

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)
