# vmhost/services/exceptions.py

class OrchestratorError(Exception):
    """오케스트레이터 경계에서 (code, message) 형태로 호출자에게 전달되는 오류의 기반 클래스"""
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"code": self.code, "message": self.message}

# --- Lookup Exceptions ---
class VmNotFoundError(OrchestratorError):
    """VM을 찾을 수 없을 때"""
    code = "NOT_FOUND"

class BackupNotFoundError(OrchestratorError):
    """백업 작업을 찾을 수 없을 때"""
    code = "NOT_FOUND"

class SnapshotNotFoundError(OrchestratorError):
    """VM에서 스냅샷을 찾을 수 없을 때"""
    code = "NOT_FOUND"

class TemplateNotFoundError(OrchestratorError):
    """템플릿을 찾을 수 없을 때"""
    code = "NOT_FOUND"

# --- Creation/Validation Exceptions ---
class VmAlreadyExistsError(OrchestratorError):
    """VM 이름이 이미 존재할 때"""
    code = "ALREADY_EXISTS"

class SnapshotAlreadyExistsError(OrchestratorError):
    """같은 VM에 같은 이름의 스냅샷이 이미 있을 때"""
    code = "ALREADY_EXISTS"

class TemplateAlreadyExistsError(OrchestratorError):
    """템플릿 이름이 이미 존재할 때"""
    code = "ALREADY_EXISTS"

class InvalidConfigurationError(OrchestratorError):
    """VM 설정이 잘못되었을 때 (예: 브리지 이름 없는 bridge 모드)"""
    code = "INVALID_CONFIGURATION"

class ResourceExhaustedError(OrchestratorError):
    """할당 가능한 디스플레이 포트가 남아 있지 않을 때"""
    code = "RESOURCE_EXHAUSTED"

# --- State Precondition Exceptions ---
class VmAlreadyRunningError(OrchestratorError):
    """이미 실행 중인 VM을 시작하거나 수정하려 할 때"""
    code = "ALREADY_RUNNING"

class VmNotRunningError(OrchestratorError):
    """실행 중이 아닌 VM을 중지하려 할 때"""
    code = "NOT_RUNNING"

class JobInProgressError(OrchestratorError):
    """같은 VM에 진행 중인 백업/복원 작업이 있을 때"""
    code = "JOB_IN_PROGRESS"

class InvalidStateError(OrchestratorError):
    """작업 상태가 요청한 전이를 허용하지 않을 때 (예: 완료되지 않은 백업 복원)"""
    code = "INVALID_STATE"

class UnsupportedDisplayError(OrchestratorError):
    """VM의 디스플레이 방식이 SPICE가 아닐 때"""
    code = "UNSUPPORTED_DISPLAY"

# --- External Tool Exceptions ---
class ProvisioningFailedError(OrchestratorError):
    """디스크 이미지 도구(qemu-img) 실행이 실패했을 때. 메시지에 stderr 포함"""
    code = "PROVISIONING_FAILED"

class LaunchFailedError(OrchestratorError):
    """하이퍼바이저 프로세스를 띄우지 못했거나 PID를 얻지 못했을 때"""
    code = "LAUNCH_FAILED"
