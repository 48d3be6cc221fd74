"""Archive helpers used by the backup store."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when the tar binary fails to create or extract an archive."""


def detect_zstd_support() -> bool:
    """Return True when both tar and zstd binaries are available."""
    return shutil.which("tar") is not None and shutil.which("zstd") is not None


def resolve_algorithm(preference: str) -> str:
    """Return the concrete compression algorithm for *preference*."""
    if preference == "auto":
        return "zstd" if detect_zstd_support() else "gzip"
    return preference


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "zstd":
        return "tar.zst"
    return "tar"


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
) -> None:
    """Create an archive of *source_dir* (as a top-level entry) at *archive_path*."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    env = os.environ.copy()
    cmd: list[str] = [tar_bin]

    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    elif algorithm == "zstd":
        cmd.extend(["--zstd", "-cf", str(archive_path)])
        if compression_level is not None:
            env["ZSTD_CLEVEL"] = str(compression_level)
    else:
        cmd.extend(["-cf", str(archive_path)])

    cmd.extend(["-C", str(source_dir.parent), source_dir.name])

    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, algorithm: str, destination: Path) -> None:
    """Extract *archive_path* into *destination*, preserving permissions."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to extract archives.")

    destination.mkdir(parents=True, exist_ok=True)
    cmd: list[str] = [tar_bin]
    if algorithm == "zstd":
        cmd.extend(["--zstd", "-xpf", str(archive_path)])
    elif algorithm == "gzip":
        cmd.extend(["-xpzf", str(archive_path)])
    else:
        cmd.extend(["-xpf", str(archive_path)])
    cmd.extend(["-C", str(destination)])

    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise ArchiveError(f"Failed to extract {archive_path}: {message}")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def fsync_path(path: Path) -> None:
    """Flush *path* (file or directory) to stable storage."""
    flags = os.O_RDONLY
    if path.is_dir():
        flags |= getattr(os, "O_DIRECTORY", 0)
    fd = os.open(path, flags)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


__all__ = [
    "ArchiveError",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "detect_zstd_support",
    "extract_archive",
    "fsync_path",
    "resolve_algorithm",
    "write_checksum_file",
]
