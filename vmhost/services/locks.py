import threading

# 포트 할당은 모든 VM의 포트를 훑으므로 호스트 전역으로 직렬화합니다.
allocation_lock = threading.Lock()


class VMLockRegistry:
    """
    VM ID별 재진입 가능 잠금을 제공합니다.

    같은 VM에 대한 start/stop/restart/update/delete/backup/restore/snapshot은 이 잠금으로
    직렬화되고, 서로 다른 VM에 대한 작업은 병렬로 진행됩니다.
    delete -> stop, restart -> stop/start처럼 중첩 호출이 있어 RLock을 사용합니다.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def lock_for(self, vm_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(vm_id)
            if lock is None:
                lock = self._locks[vm_id] = threading.RLock()
            return lock

    def discard(self, vm_id: int):
        """삭제된 VM의 잠금을 잊습니다. VM ID는 다시 쓰이지 않으므로 이후에 같은 ID를 요청할 일이 없습니다."""
        with self._guard:
            self._locks.pop(vm_id, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


vm_locks = VMLockRegistry()
