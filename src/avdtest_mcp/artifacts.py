"""
Backup and restore of the system image files a test run mutates.

The pristine copy of each artifact lives next to it as "<name>.bak". Backups
are created once, before the first patch, and are never removed by the
harness: they are the rollback source for the whole run.
"""
import logging
import shutil
from pathlib import Path
from typing import List

from .environment import EnvironmentContext
from .errors import ProvisioningFailure

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + BACKUP_SUFFIX)


class ArtifactStore:
    """Creates backups of, and restores, the mutable image artifacts."""

    def ensure_backups(self, context: EnvironmentContext) -> List[Path]:
        """Create missing backups from the live artifacts.

        Must run before the first patch of a version. Existing backups are
        left untouched so they keep the pre-patch state.

        Returns:
            Backup files created by this call
        """
        created = []
        for path in context.artifacts:
            backup = backup_path(path)
            if backup.exists():
                logger.debug(f"Backup already present: {backup}")
                continue

            if not path.exists():
                raise ProvisioningFailure(
                    f"{path.name} missing for {context.version} after provisioning: {path}"
                )

            # Copy to a temporary name first so a crash never leaves a partial backup
            tmp = path.with_name(path.name + BACKUP_SUFFIX + ".tmp")
            shutil.copy2(path, tmp)
            tmp.replace(backup)
            created.append(backup)
            logger.info(f"✓ Backed up {path.name} -> {backup}")
        return created

    def restore(self, context: EnvironmentContext) -> List[Path]:
        """Copy each backup over its live artifact.

        A missing backup means there is nothing to restore yet and is not
        an error. Restoring twice is the same as restoring once.

        Returns:
            Live artifacts that were restored
        """
        restored = []
        for path in context.artifacts:
            backup = backup_path(path)
            if not backup.exists():
                logger.debug(f"No backup for {path}, nothing to restore")
                continue
            shutil.copyfile(backup, path)
            restored.append(path)
            logger.info(f"Restored {path.name} for {context.version}")
        return restored
