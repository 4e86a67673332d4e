from .sqlalchemy_vm_repository import SqlalchemyVMRepository
from .sqlalchemy_backup_repository import SqlalchemyBackupRepository
from .sqlalchemy_snapshot_repository import SqlalchemySnapshotRepository
from .sqlalchemy_template_repository import SqlalchemyTemplateRepository

__all__ = [
    "SqlalchemyVMRepository",
    "SqlalchemyBackupRepository",
    "SqlalchemySnapshotRepository",
    "SqlalchemyTemplateRepository",
]
