from .vm import IVMRepository
from .backup import IBackupRepository
from .snapshot import ISnapshotRepository
from .template import ITemplateRepository

__all__ = ["IVMRepository", "IBackupRepository", "ISnapshotRepository", "ITemplateRepository"]
