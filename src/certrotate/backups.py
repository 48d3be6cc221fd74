"""Pre-rotation snapshots of the service state and configuration.

Each snapshot lives in its own directory under the backup root, named by a
sortable identifier (``YYYYMMDD-HHMMSS-ffffff-<domain>``)::

    <root>/<id>/state.tar.gz          persisted-state directory
    <root>/<id>/state.tar.gz.sha256
    <root>/<id>/<config file name>    copy of the configuration file
    <root>/<id>/tls.tar.gz            installed TLS material, when present
    <root>/<id>/backup.json           manifest

Snapshots are assembled in a hidden staging directory and renamed into place
once every artefact is on disk, so a half-written snapshot is never picked up
as the latest one. The JSON index (``backups.json``) is an audit trail; the
restore path trusts the identifiers on disk.
"""
from __future__ import annotations

import json
import os
import re
import secrets
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .archive import (
    ArchiveError,
    compression_extension,
    compute_checksum,
    create_archive,
    extract_archive,
    fsync_path,
    resolve_algorithm,
    write_checksum_file,
)
from .models import Backup, ServicePaths

MANIFEST_NAME = "backup.json"
_IDENTIFIER_PATTERN = re.compile(r"^(?P<stamp>\d{8}-\d{6}-\d{6})-(?P<slug>[A-Za-z0-9_-]+)$")
_IDENTIFIER_FORMAT = "%Y%m%d-%H%M%S-%f"


class BackupError(RuntimeError):
    """Raised when a snapshot cannot be created."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


class RestoreError(RuntimeError):
    """Raised when a snapshot cannot be restored; requires manual intervention."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


def identifier_timestamp(backup_id: str) -> datetime | None:
    """Return the creation time embedded in *backup_id* (None when malformed)."""
    match = _IDENTIFIER_PATTERN.match(backup_id)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group("stamp"), _IDENTIFIER_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            text = self.index.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        data = self.read()
        backups = data.get("backups")
        if isinstance(backups, list):
            updated: list[object] = list(backups)
        else:
            updated = []
        updated.append(dict(entry))
        self.write({"backups": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        data = self.read()
        backups = data.get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *backup_id* and persist changes."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        entries = self.list_entries()
        updated_entry: dict[str, object] | None = None
        for index, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == normalized:
                mutable = dict(entry)
                mutator(mutable)
                entries[index] = mutable
                updated_entry = mutable
                break
        if updated_entry is None:
            raise BackupRegistryError(f"Backup '{normalized}' not found in index.")
        self.write({"backups": entries})
        return updated_entry

    # Utility helpers -----------------------------------------------
    def generate_identifier(self, domain: str, *, now: datetime | None = None) -> str:
        """Return a sortable backup identifier for *domain*."""
        moment = now or datetime.now(tz=UTC)
        safe_domain = "".join(
            char if char.isalnum() or char in {"-", "_"} else "-" for char in domain
        )
        return f"{moment:{_IDENTIFIER_FORMAT}}-{safe_domain}"


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    domain: str
    backup_path: Path
    algorithm: str
    checksum: str
    size_bytes: int
    tls_included: bool = False
    compression_level: int | None = None
    message: str | None = None

    def build(self, *, backup_id: str) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        entry: dict[str, object] = {
            "id": backup_id,
            "domain": self.domain,
            "created_at": _now_iso(),
            "path": str(self.backup_path),
            "algorithm": self.algorithm,
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "status": "available",
            "metadata": {"tls_included": self.tls_included},
        }
        if self.compression_level is not None:
            entry["compression_level"] = self.compression_level
        if self.message:
            entry["message"] = self.message
        return entry


class BackupStore:
    """Snapshot and restore the managed service's state and configuration."""

    def __init__(
        self,
        registry: BackupsRegistry,
        paths: ServicePaths,
        *,
        compression: str = "gzip",
        compression_level: int | None = None,
    ) -> None:
        """Bind the store to a backup registry and the live service paths."""
        self.registry = registry
        self.paths = paths
        self._compression = compression
        self._compression_level = compression_level

    # Snapshot ------------------------------------------------------
    def snapshot(self, domain: str) -> Backup:
        """Archive the state directory and configuration file.

        Raises :class:`BackupError` when either source is inaccessible or any
        artefact cannot be written; nothing is left behind in that case.
        """
        state_dir = self.paths.state_dir
        config_file = self.paths.config_file
        if not state_dir.is_dir() or not os.access(state_dir, os.R_OK | os.X_OK):
            raise BackupError(f"Service state directory {state_dir} is missing or unreadable.")
        if not config_file.is_file() or not os.access(config_file, os.R_OK):
            raise BackupError(f"Service configuration {config_file} is missing or unreadable.")

        try:
            self.registry.ensure_root()
        except BackupRegistryError as exc:
            raise BackupError(str(exc)) from exc

        created_at = datetime.now(tz=UTC)
        backup_id = self.registry.generate_identifier(domain, now=created_at)
        final_dir = self.registry.root / backup_id
        if final_dir.exists():
            raise BackupError(f"Backup directory {final_dir} already exists.")
        staging = self.registry.root / f".{backup_id}.partial-{secrets.token_hex(3)}"

        algorithm = resolve_algorithm(self._compression)
        extension = compression_extension(algorithm)
        tls_dir = self.paths.tls_dir
        tls_included = tls_dir.is_dir()
        try:
            staging.mkdir(mode=0o750)
            state_archive = staging / f"state.{extension}"
            create_archive(state_dir, state_archive, algorithm, self._compression_level)
            checksum = compute_checksum(state_archive)
            write_checksum_file(state_archive, checksum)

            config_copy = staging / config_file.name
            shutil.copy2(config_file, config_copy)

            tls_archive: Path | None = None
            if tls_included:
                tls_archive = staging / f"tls.{extension}"
                create_archive(tls_dir, tls_archive, algorithm, self._compression_level)

            manifest = {
                "id": backup_id,
                "domain": domain,
                "created_at": created_at.isoformat(),
                "algorithm": algorithm,
                "checksum": checksum,
                "state_archive": state_archive.name,
                "state_dir": str(state_dir),
                "config_copy": config_copy.name,
                "config_file": str(config_file),
                "tls_archive": tls_archive.name if tls_archive is not None else None,
                "tls_dir": str(tls_dir),
            }
            (staging / MANIFEST_NAME).write_text(
                json.dumps(manifest, indent=2) + "\n",
                encoding="utf-8",
            )
            for artefact in staging.iterdir():
                fsync_path(artefact)
            os.replace(staging, final_dir)
            fsync_path(self.registry.root)
        except (ArchiveError, OSError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"Failed to write backup {backup_id}: {exc}") from exc

        backup = self._load(final_dir)
        entry = BackupEntryBuilder(
            domain=domain,
            backup_path=final_dir,
            algorithm=algorithm,
            checksum=checksum,
            size_bytes=_tree_size(final_dir),
            tls_included=tls_included,
            compression_level=self._compression_level,
            message="pre-rotation snapshot",
        ).build(backup_id=backup_id)
        try:
            self.registry.append(entry)
        except BackupRegistryError as exc:
            raise BackupError(f"Backup {backup_id} written but index update failed: {exc}") from exc
        return backup

    # Discovery -----------------------------------------------------
    def list_backups(self) -> list[Backup]:
        """Return loadable backups, newest first."""
        backups: list[Backup] = []
        for path in self._candidate_dirs():
            try:
                backups.append(self._load(path))
            except RestoreError:
                continue
        return backups

    def latest(self) -> Backup | None:
        """Return the most recent backup, or None when there is none."""
        candidates = self._candidate_dirs()
        if not candidates:
            return None
        return self._load(candidates[0])

    # Restore -------------------------------------------------------
    def restore_latest(self) -> Backup:
        """Restore the most recently created backup (by identifier timestamp)."""
        candidates = self._candidate_dirs()
        if not candidates:
            raise RestoreError(f"No backups found under {self.registry.root}.")
        backup = self._load(candidates[0])
        self._restore(backup)
        return backup

    def get(self, backup_id: str) -> Backup:
        """Return the backup named *backup_id*."""
        normalized = backup_id.strip()
        if identifier_timestamp(normalized) is None:
            raise RestoreError(f"'{backup_id}' is not a valid backup identifier.")
        path = self.registry.root / normalized
        if not path.is_dir():
            raise RestoreError(f"Backup '{normalized}' not found under {self.registry.root}.")
        return self._load(path)

    def restore(self, backup_id: str) -> Backup:
        """Restore the backup named *backup_id*."""
        backup = self.get(backup_id)
        self._restore(backup)
        return backup

    def mark_restored(self, backup: Backup) -> None:
        """Stamp the index entry for *backup* with the restore time."""
        stamp = _now_iso()

        def _mutate(entry: dict[str, object]) -> None:
            entry["last_restored_at"] = stamp
            entry["restore_count"] = int(str(entry.get("restore_count", 0) or 0)) + 1

        self.registry.update_entry(backup.id, _mutate)

    # ------------------------------------------------------------------
    def _candidate_dirs(self) -> list[Path]:
        root = self.registry.root
        if not root.is_dir():
            return []
        stamped: list[tuple[datetime, str, Path]] = []
        for path in root.iterdir():
            if not path.is_dir():
                continue
            stamp = identifier_timestamp(path.name)
            if stamp is None:
                continue
            stamped.append((stamp, path.name, path))
        stamped.sort(reverse=True)
        return [path for _, _, path in stamped]

    def _load(self, path: Path) -> Backup:
        manifest_path = path / MANIFEST_NAME
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RestoreError(f"Backup manifest {manifest_path} is unreadable: {exc}") from exc
        if not isinstance(data, Mapping):
            raise RestoreError(f"Backup manifest {manifest_path} must be a JSON object.")
        try:
            created_at = datetime.fromisoformat(str(data["created_at"]))
            tls_name = data.get("tls_archive")
            return Backup(
                id=str(data["id"]),
                domain=str(data["domain"]),
                created_at=created_at,
                path=path,
                state_archive=path / str(data["state_archive"]),
                config_copy=path / str(data["config_copy"]),
                algorithm=str(data["algorithm"]),
                checksum=str(data["checksum"]),
                tls_archive=path / str(tls_name) if tls_name else None,
            )
        except (KeyError, ValueError) as exc:
            raise RestoreError(f"Backup manifest {manifest_path} is incomplete: {exc}") from exc

    def _restore(self, backup: Backup) -> None:
        if not backup.state_archive.is_file():
            raise RestoreError(f"State archive {backup.state_archive} is missing.")
        if not backup.config_copy.is_file():
            raise RestoreError(f"Configuration copy {backup.config_copy} is missing.")
        if backup.tls_archive is not None and not backup.tls_archive.is_file():
            raise RestoreError(f"TLS archive {backup.tls_archive} is missing.")
        try:
            actual = compute_checksum(backup.state_archive)
        except OSError as exc:
            raise RestoreError(f"Cannot read {backup.state_archive}: {exc}") from exc
        if actual != backup.checksum:
            raise RestoreError(
                f"Checksum mismatch for {backup.state_archive} "
                f"(expected {backup.checksum}, got {actual})."
            )

        self._swap_directory(backup.state_archive, backup.algorithm, self.paths.state_dir)
        _replace_file(backup.config_copy, self.paths.config_file)
        if backup.tls_archive is not None:
            self._swap_directory(backup.tls_archive, backup.algorithm, self.paths.tls_dir)
        else:
            # TLS material did not exist before the rotation.
            for installed in (self.paths.cert_file, self.paths.key_file):
                try:
                    installed.unlink(missing_ok=True)
                except OSError as exc:
                    raise RestoreError(f"Failed to remove {installed}: {exc}") from exc

    def _swap_directory(self, archive: Path, algorithm: str, target: Path) -> None:
        suffix = f"{datetime.now(tz=UTC):%Y%m%d%H%M%S}-{secrets.token_hex(2)}"
        parent = target.parent
        staging = parent / f".{target.name}.restore-{suffix}"
        aside = parent / f".{target.name}.pre-restore-{suffix}"
        try:
            parent.mkdir(parents=True, exist_ok=True)
            extract_archive(archive, algorithm, staging)
            payload = staging / target.name
            if not payload.is_dir():
                raise RestoreError(f"Archive {archive} does not contain '{target.name}'.")
            moved_aside = False
            if target.exists():
                os.replace(target, aside)
                moved_aside = True
            try:
                os.replace(payload, target)
            except OSError:
                if moved_aside:
                    os.replace(aside, target)
                raise
            if moved_aside:
                shutil.rmtree(aside, ignore_errors=True)
        except ArchiveError as exc:
            raise RestoreError(str(exc)) from exc
        except OSError as exc:
            raise RestoreError(f"Failed to restore {target}: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)


def _replace_file(source: Path, destination: Path) -> None:
    tmp = destination.with_name(f".{destination.name}.restore-{secrets.token_hex(3)}")
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, tmp)
        os.replace(tmp, destination)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise RestoreError(f"Failed to restore {destination}: {exc}") from exc


def _tree_size(path: Path) -> int:
    return sum(item.stat().st_size for item in path.rglob("*") if item.is_file())


__all__ = [
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupStore",
    "BackupsRegistry",
    "RestoreError",
    "identifier_timestamp",
]
