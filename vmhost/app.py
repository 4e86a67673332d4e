# vmhost/app.py
from wsgiref.simple_server import make_server
from urllib.parse import parse_qs
import json
import logging
import os
import re
import sys

from vmhost.config import get_settings
from vmhost.database.database import SessionLocal
from vmhost.database.db_init import initialize_db
from vmhost.repositories.sqlalchemy import (
    SqlalchemyBackupRepository,
    SqlalchemySnapshotRepository,
    SqlalchemyTemplateRepository,
    SqlalchemyVMRepository,
)
from vmhost.services.backup_service import BackupService
from vmhost.services.disk_service import DiskService
from vmhost.services.display_service import AccessDescriptor, DisplayService
from vmhost.services.exceptions import OrchestratorError
from vmhost.services.host_inventory_service import HostInventoryService
from vmhost.services.job_runner import BackupJobRunner
from vmhost.services.process_supervisor import ProcessSupervisor
from vmhost.services.resource_allocator import ResourceAllocator
from vmhost.services.snapshot_service import SnapshotService
from vmhost.services.template_service import TemplateService
from vmhost.services.vm_service import VMService

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

ERROR_STATUS = {
    "NOT_FOUND": "404 Not Found",
    "INVALID_CONFIGURATION": "400 Bad Request",
    "UNSUPPORTED_DISPLAY": "400 Bad Request",
    "ALREADY_EXISTS": "409 Conflict",
    "ALREADY_RUNNING": "409 Conflict",
    "NOT_RUNNING": "409 Conflict",
    "JOB_IN_PROGRESS": "409 Conflict",
    "INVALID_STATE": "409 Conflict",
    "RESOURCE_EXHAUSTED": "503 Service Unavailable",
    "PROVISIONING_FAILED": "500 Internal Server Error",
    "LAUNCH_FAILED": "500 Internal Server Error",
}


def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        data = json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValueError("Invalid or missing JSON body.")
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object.")
    return data


def get_query_param(environ, name, default=None):
    values = parse_qs(environ.get("QUERY_STRING", "")).get(name)
    return values[0] if values else default


def handle_exception(e):
    if isinstance(e, OrchestratorError):
        status = ERROR_STATUS.get(e.code, "500 Internal Server Error")
        error = e.to_dict()
    elif isinstance(e, (ValueError, TypeError)):
        # 잘못된 JSON, 알 수 없는 필드, 숫자가 아닌 쿼리 값
        status = "400 Bad Request"
        error = {"code": "BAD_REQUEST", "message": str(e)}
    else:
        logger.exception("Unhandled error while processing request")
        status = "500 Internal Server Error"
        error = {"code": "INTERNAL_ERROR", "message": str(e)}
    return status, {"success": False, "error": error}


def build_services(db_session, settings, job_runner):
    """요청 하나에서 사용할 저장소와 서비스 객체를 조립합니다. (Repositories -> Services)"""
    vm_repo = SqlalchemyVMRepository(db_session)
    backup_repo = SqlalchemyBackupRepository(db_session)
    snapshot_repo = SqlalchemySnapshotRepository(db_session)
    template_repo = SqlalchemyTemplateRepository(db_session)

    supervisor = ProcessSupervisor(vm_repo, backup_repo, settings)
    disk_service = DiskService(settings.vm_storage_dir, settings.qemu_img_binary)
    vm_service = VMService(
        vm_repo,
        backup_repo,
        snapshot_repo,
        disk_service=disk_service,
        supervisor=supervisor,
        allocator=ResourceAllocator(vm_repo),
        display_service=DisplayService(settings.spice_host),
        settings=settings,
    )
    backup_service = BackupService(vm_repo, backup_repo, supervisor, job_runner, settings)
    return {
        'vm': vm_service,
        'backup': backup_service,
        'snapshot': SnapshotService(vm_repo, backup_repo, snapshot_repo, disk_service, supervisor),
        'template': TemplateService(template_repo, vm_repo, backup_repo, supervisor, vm_service, settings),
        'host': HostInventoryService(settings.iso_dir),
    }

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

def make_application(session_factory, settings, job_runner):
    """
    WSGI 애플리케이션을 생성합니다.

    Args:
        session_factory: 요청마다 DB 세션을 만들 sessionmaker.
        settings: 오케스트레이터 설정.
        job_runner: 프로세스 전체가 공유하는 백업 작업 실행기.
    """
    def application(environ, start_response):
        db_session = session_factory()
        headers = [("Content-Type", "application/json")]
        try:
            # 1. 의존성 생성 후 environ을 통해 핸들러에 전달
            environ['services'] = build_services(db_session, settings, job_runner)

            # 2. 라우팅 및 핸들러 실행
            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_method, pattern, route_handler in ROUTES:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, payload = handler(environ, *path_args)
            else:
                status, payload = '404 Not Found', {
                    "success": False, "error": {"code": "NOT_FOUND", "message": f"No route for {method} {path}"}
                }
        except Exception as e:
            status, payload = handle_exception(e)
        finally:
            db_session.close()

        if isinstance(payload, AccessDescriptor):
            body = payload.render()
            headers = [
                ("Content-Type", payload.mime_type),
                ("Content-Disposition", f'attachment; filename="{payload.filename}"'),
            ]
        else:
            body = json.dumps(payload).encode("utf-8")
        start_response(status, headers)
        return [body]

    return application

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def ok(**payload):
    return {"success": True, **payload}


def list_vms_handler(environ, *args):
    return '200 OK', ok(vms=environ['services']['vm'].list_vms())

def create_vm_handler(environ, *args):
    data = get_request_data(environ)
    vm_service = environ['services']['vm']
    vm_id = vm_service.create_vm(**data)
    return '201 Created', ok(id=vm_id, vm=vm_service.get_vm(vm_id))

def get_vm_handler(environ, vm_id):
    return '200 OK', ok(vm=environ['services']['vm'].get_vm(int(vm_id)))

def update_vm_handler(environ, vm_id):
    data = get_request_data(environ)
    return '200 OK', ok(vm=environ['services']['vm'].update_vm(int(vm_id), **data))

def delete_vm_handler(environ, vm_id):
    environ['services']['vm'].delete_vm(int(vm_id))
    return '200 OK', ok(message=f"VM {vm_id} deleted.")

def start_vm_handler(environ, vm_id):
    return '200 OK', ok(**environ['services']['vm'].start_vm(int(vm_id)))

def stop_vm_handler(environ, vm_id):
    force = bool(get_request_data(environ).get("force", False))
    return '200 OK', ok(**environ['services']['vm'].stop_vm(int(vm_id), force=force))

def restart_vm_handler(environ, vm_id):
    return '200 OK', ok(**environ['services']['vm'].restart_vm(int(vm_id)))

def vm_status_handler(environ, vm_id):
    return '200 OK', ok(**environ['services']['vm'].get_status(int(vm_id)))

def vm_logs_handler(environ, vm_id):
    lines = int(get_query_param(environ, "lines", 100))
    return '200 OK', ok(logs=environ['services']['vm'].get_logs(int(vm_id), lines))

def vm_spice_handler(environ, vm_id):
    return '200 OK', environ['services']['vm'].generate_spice_file(int(vm_id))

def list_isos_handler(environ, *args):
    return '200 OK', ok(isos=environ['services']['host'].list_isos())

def list_disks_handler(environ, *args):
    return '200 OK', ok(disks=environ['services']['host'].list_physical_disks())

def list_bridges_handler(environ, *args):
    return '200 OK', ok(bridges=environ['services']['host'].list_network_bridges())

def create_backup_handler(environ, vm_id):
    data = get_request_data(environ)
    backup_id = environ['services']['backup'].create_backup(int(vm_id), notes=data.get("notes", ""))
    return '202 Accepted', ok(backup_id=backup_id, status="creating")

def list_vm_backups_handler(environ, vm_id):
    return '200 OK', ok(backups=environ['services']['backup'].list_backups(int(vm_id)))

def list_all_backups_handler(environ, *args):
    return '200 OK', ok(backups=environ['services']['backup'].list_all_backups())

def backup_status_handler(environ, backup_id):
    return '200 OK', ok(**environ['services']['backup'].check_backup_status(int(backup_id)))

def restore_backup_handler(environ, backup_id):
    environ['services']['backup'].restore_backup(int(backup_id))
    return '202 Accepted', ok(backup_id=int(backup_id), status="restoring")

def delete_backup_handler(environ, backup_id):
    environ['services']['backup'].delete_backup(int(backup_id))
    return '200 OK', ok(message=f"Backup {backup_id} deleted.")

def list_snapshots_handler(environ, vm_id):
    return '200 OK', ok(snapshots=environ['services']['snapshot'].list_snapshots(int(vm_id)))

def create_snapshot_handler(environ, vm_id):
    data = get_request_data(environ)
    snapshot = environ['services']['snapshot'].create_snapshot(
        int(vm_id), name=data.get("name"), description=data.get("description", "")
    )
    return '201 Created', ok(snapshot=snapshot)

def restore_snapshot_handler(environ, vm_id, snapshot_id):
    snapshot = environ['services']['snapshot'].restore_snapshot(int(vm_id), int(snapshot_id))
    return '200 OK', ok(snapshot=snapshot)

def delete_snapshot_handler(environ, vm_id, snapshot_id):
    environ['services']['snapshot'].delete_snapshot(int(vm_id), int(snapshot_id))
    return '200 OK', ok(message=f"Snapshot {snapshot_id} deleted.")

def save_template_handler(environ, vm_id):
    data = get_request_data(environ)
    template = environ['services']['template'].save_vm_as_template(
        int(vm_id),
        name=data.get("name"),
        description=data.get("description", ""),
        include_disk=bool(data.get("include_disk", True)),
    )
    return '201 Created', ok(template=template)

def list_templates_handler(environ, *args):
    return '200 OK', ok(templates=environ['services']['template'].list_templates())

def get_template_handler(environ, template_id):
    return '200 OK', ok(template=environ['services']['template'].get_template(int(template_id)))

def delete_template_handler(environ, template_id):
    environ['services']['template'].delete_template(int(template_id))
    return '200 OK', ok(message=f"Template {template_id} deleted.")

def create_vm_from_template_handler(environ, template_id):
    data = get_request_data(environ)
    name = data.pop("name", None)
    vm_id = environ['services']['template'].create_vm_from_template(int(template_id), name, **data)
    return '201 Created', ok(id=vm_id, vm=environ['services']['vm'].get_vm(vm_id))


ROUTES = [
    ('GET', r'^/v1/vms$', list_vms_handler),
    ('POST', r'^/v1/vms$', create_vm_handler),
    ('GET', r'^/v1/vms/([0-9]+)$', get_vm_handler),
    ('PATCH', r'^/v1/vms/([0-9]+)$', update_vm_handler),
    ('DELETE', r'^/v1/vms/([0-9]+)$', delete_vm_handler),
    ('POST', r'^/v1/vms/([0-9]+)/start$', start_vm_handler),
    ('POST', r'^/v1/vms/([0-9]+)/stop$', stop_vm_handler),
    ('POST', r'^/v1/vms/([0-9]+)/restart$', restart_vm_handler),
    ('GET', r'^/v1/vms/([0-9]+)/status$', vm_status_handler),
    ('GET', r'^/v1/vms/([0-9]+)/logs$', vm_logs_handler),
    ('GET', r'^/v1/vms/([0-9]+)/spice$', vm_spice_handler),
    ('POST', r'^/v1/vms/([0-9]+)/backups$', create_backup_handler),
    ('GET', r'^/v1/vms/([0-9]+)/backups$', list_vm_backups_handler),
    ('GET', r'^/v1/vms/([0-9]+)/snapshots$', list_snapshots_handler),
    ('POST', r'^/v1/vms/([0-9]+)/snapshots$', create_snapshot_handler),
    ('POST', r'^/v1/vms/([0-9]+)/snapshots/([0-9]+)/restore$', restore_snapshot_handler),
    ('DELETE', r'^/v1/vms/([0-9]+)/snapshots/([0-9]+)$', delete_snapshot_handler),
    ('POST', r'^/v1/vms/([0-9]+)/template$', save_template_handler),
    ('GET', r'^/v1/host/isos$', list_isos_handler),
    ('GET', r'^/v1/host/disks$', list_disks_handler),
    ('GET', r'^/v1/host/bridges$', list_bridges_handler),
    ('GET', r'^/v1/backups$', list_all_backups_handler),
    ('GET', r'^/v1/backups/([0-9]+)$', backup_status_handler),
    ('POST', r'^/v1/backups/([0-9]+)/restore$', restore_backup_handler),
    ('DELETE', r'^/v1/backups/([0-9]+)$', delete_backup_handler),
    ('GET', r'^/v1/templates$', list_templates_handler),
    ('GET', r'^/v1/templates/([0-9]+)$', get_template_handler),
    ('DELETE', r'^/v1/templates/([0-9]+)$', delete_template_handler),
    ('POST', r'^/v1/templates/([0-9]+)/vms$', create_vm_from_template_handler),
]

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

def recover_interrupted_jobs(session_factory, settings, job_runner):
    """이전 프로세스에서 끝나지 못한 백업/복원 작업을 정리합니다. 요청을 받기 전에 호출합니다."""
    db_session = session_factory()
    try:
        recovered = build_services(db_session, settings, job_runner)['backup'].recover_interrupted_jobs()
    finally:
        db_session.close()
    if recovered:
        logger.warning("Recovered %d interrupted backup job(s): %s", len(recovered), recovered)
    return recovered


def main():
    logging.basicConfig(
        level=os.getenv("VMHOST_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    settings = get_settings()
    initialize_db()

    job_runner = BackupJobRunner(SessionLocal, settings.backup_workers)
    recover_interrupted_jobs(SessionLocal, settings, job_runner)
    application = make_application(SessionLocal, settings, job_runner)
    host = os.getenv("VMHOST_HOST", "")
    port = int(os.getenv("VMHOST_PORT", "8000"))
    try:
        with make_server(host, port, application) as httpd:
            logger.info("Serving vmhost orchestrator on port %s...", port)
            httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
    finally:
        job_runner.shutdown(wait=True)


if __name__ == "__main__":
    main()
