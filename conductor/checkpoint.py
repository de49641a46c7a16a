"""Checkpoints: all-or-nothing snapshots of stages/, state/ and optionally config/.

Layout: <project>/state/checkpoints/<checkpoint_id>/{stages,state,config,metadata.json}.
The checkpoints directory is never copied into a checkpoint and never deleted
by a restore.
"""

import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from conductor.errors import CheckpointIOError
from conductor.models import CheckpointMetadata

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointManager:
    """Creates, lists, restores and prunes checkpoints for one project."""

    def __init__(self, project_root: Path, clock: Callable[[], datetime] = _utcnow) -> None:
        self.project_root = Path(project_root)
        self.checkpoints_dir = self.project_root / "state" / "checkpoints"
        self._clock = clock

    def path_for(self, checkpoint_id: str) -> Path:
        return self.checkpoints_dir / checkpoint_id

    def generate_id(self, stage_id: str, now: datetime) -> str:
        base = f"checkpoint_{stage_id}_{now.strftime('%Y-%m-%dT%H-%M-%S')}"
        candidate, n = base, 1
        while self.path_for(candidate).exists():
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    # ------------------------------------------------------------------ query

    def list_all(self) -> list[CheckpointMetadata]:
        """All readable checkpoints, newest first."""
        if not self.checkpoints_dir.is_dir():
            return []
        checkpoints: list[CheckpointMetadata] = []
        for entry in self.checkpoints_dir.iterdir():
            metadata = self.get(entry.name) if entry.is_dir() else None
            if metadata is not None:
                checkpoints.append(metadata)
        return sorted(checkpoints, key=lambda c: datetime.fromisoformat(c.created_at), reverse=True)

    def get(self, checkpoint_id: str) -> CheckpointMetadata | None:
        """Metadata for a checkpoint directly under the checkpoints directory, else None."""
        if checkpoint_id in ("", ".", "..") or Path(checkpoint_id).name != checkpoint_id:
            return None
        metadata_path = self.path_for(checkpoint_id) / METADATA_FILE
        if not metadata_path.is_file():
            return None
        try:
            raw = json.loads(metadata_path.read_text(encoding="utf-8"))
            return CheckpointMetadata(**raw)
        except (ValueError, TypeError) as exc:
            logger.warning("Unreadable checkpoint metadata %s: %s", metadata_path, exc)
            return None

    # ----------------------------------------------------------------- create

    def create(
        self,
        stage_id: str,
        description: str | None = None,
        include_stages: bool = True,
        include_state: bool = True,
        include_config: bool = False,
    ) -> CheckpointMetadata:
        """Snapshot the selected trees.

        Raises:
            CheckpointIOError: On any copy or write failure. The partial
                checkpoint directory is removed before raising.
        """
        now = self._clock()
        checkpoint_id = self.generate_id(stage_id, now)
        checkpoint_path = self.path_for(checkpoint_id)

        try:
            checkpoint_path.mkdir(parents=True)
            files: list[str] = []

            if include_stages:
                src = self.project_root / "stages"
                if src.is_dir():
                    shutil.copytree(src, checkpoint_path / "stages")
                    files.append("stages/")

            if include_state:
                src = self.project_root / "state"
                if src.is_dir():
                    shutil.copytree(src, checkpoint_path / "state", ignore=self._skip_checkpoints_dir)
                    files.append("state/")

            if include_config:
                src = self.project_root / "config"
                if src.is_dir():
                    shutil.copytree(src, checkpoint_path / "config")
                    files.append("config/")

            metadata = CheckpointMetadata(
                id=checkpoint_id,
                stage=stage_id,
                created_at=now.isoformat(),
                description=description,
                files=files,
            )
            (checkpoint_path / METADATA_FILE).write_text(json.dumps(asdict(metadata), indent=2), encoding="utf-8")
        except (OSError, shutil.Error) as exc:
            logger.error("Failed to create checkpoint %s: %s", checkpoint_id, exc)
            shutil.rmtree(checkpoint_path, ignore_errors=True)
            raise CheckpointIOError(checkpoint_id, f"Checkpoint creation failed: {exc}") from exc

        logger.info("Created checkpoint %s (%s)", checkpoint_id, ", ".join(files) or "empty")
        return metadata

    def _skip_checkpoints_dir(self, directory: str, names: list[str]) -> set[str]:
        if Path(directory).resolve() == self.checkpoints_dir.parent.resolve():
            return {self.checkpoints_dir.name} & set(names)
        return set()

    # ---------------------------------------------------------------- restore

    def restore(
        self,
        checkpoint_id: str,
        restore_stages: bool = True,
        restore_state: bool = True,
        restore_config: bool = False,
        partial: bool = False,
        files: list[str] | None = None,
    ) -> list[str]:
        """Copy a checkpoint back into the project.

        Full restore replaces each selected tree wholesale. Partial restore
        copies only `files` (paths relative to the project root) and touches
        nothing else.

        Returns:
            The relative paths that were restored.

        Raises:
            CheckpointIOError: If the checkpoint is missing or a copy fails. The
                destination is left as the failed copy left it.
        """
        checkpoint_path = self.path_for(checkpoint_id)
        if self.get(checkpoint_id) is None:
            raise CheckpointIOError(checkpoint_id, "Checkpoint not found")

        try:
            if partial:
                restored = self._restore_files(checkpoint_path, files or [])
            else:
                restored = []
                if restore_stages and self._replace_tree(checkpoint_path / "stages", self.project_root / "stages"):
                    restored.append("stages/")
                if restore_state and self._restore_state(checkpoint_path / "state"):
                    restored.append("state/")
                if restore_config and self._replace_tree(checkpoint_path / "config", self.project_root / "config"):
                    restored.append("config/")
        except (OSError, shutil.Error) as exc:
            logger.error("Restore of %s failed part-way: %s", checkpoint_id, exc)
            raise CheckpointIOError(
                checkpoint_id, f"Restore failed; project may be partially restored: {exc}"
            ) from exc

        logger.info("Restored checkpoint %s: %s", checkpoint_id, ", ".join(restored) or "nothing")
        return restored

    @staticmethod
    def _replace_tree(src: Path, dest: Path) -> bool:
        if not src.is_dir():
            return False
        if dest.exists():
            shutil.rmtree(dest)
        shutil.copytree(src, dest)
        return True

    def _restore_state(self, src: Path) -> bool:
        if not src.is_dir():
            return False
        dest = self.project_root / "state"
        dest.mkdir(parents=True, exist_ok=True)
        for entry in dest.iterdir():
            if entry.name == self.checkpoints_dir.name:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        for entry in src.iterdir():
            if entry.is_dir():
                shutil.copytree(entry, dest / entry.name)
            else:
                shutil.copy2(entry, dest / entry.name)
        return True

    def _restore_files(self, checkpoint_path: Path, files: list[str]) -> list[str]:
        root = checkpoint_path.resolve()
        restored: list[str] = []
        for rel in files:
            src = (checkpoint_path / rel).resolve()
            if root not in src.parents or src.name == METADATA_FILE:
                raise CheckpointIOError(checkpoint_path.name, f"Path outside checkpoint contents: {rel}")
            dest = self.project_root / src.relative_to(root)
            if self.checkpoints_dir.resolve() in dest.resolve().parents:
                raise CheckpointIOError(checkpoint_path.name, f"Refusing to write into checkpoints: {rel}")
            if not src.exists():
                logger.warning("Not in checkpoint %s, skipped: %s", checkpoint_path.name, rel)
                continue
            if src.is_dir():
                shutil.copytree(src, dest, dirs_exist_ok=True)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
            restored.append(rel)
        return restored

    # ---------------------------------------------------------------- cleanup

    def delete(self, checkpoint_id: str) -> bool:
        if self.get(checkpoint_id) is None:
            logger.warning("Not a checkpoint, nothing deleted: %s", checkpoint_id)
            return False
        path = self.path_for(checkpoint_id)
        shutil.rmtree(path)
        logger.info("Deleted checkpoint %s", checkpoint_id)
        return True

    def cleanup(self, max_retention: int = 10, preserve_milestones: bool = True) -> list[str]:
        """Delete the oldest checkpoints beyond `max_retention`.

        The number deleted is the excess over `max_retention`; milestone
        checkpoints are passed over (not counted) when `preserve_milestones`
        is set, so fewer may be deleted if too few candidates remain.

        Returns:
            Ids of the deleted checkpoints, oldest first.
        """
        checkpoints = self.list_all()
        excess = len(checkpoints) - max_retention
        if excess <= 0:
            return []

        deleted: list[str] = []
        for checkpoint in reversed(checkpoints):
            if len(deleted) >= excess:
                break
            if preserve_milestones and checkpoint.is_milestone:
                continue
            if self.delete(checkpoint.id):
                deleted.append(checkpoint.id)
        return deleted
