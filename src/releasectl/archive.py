"""Artifact and archive helpers shared by the release and backup workflows."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path


class ArtifactError(RuntimeError):
    """Raised when an artifact cannot be digested or unpacked."""


TARBALL_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.zst")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_tarball(path: Path) -> bool:
    """Return True when *path* names a tar archive we know how to unpack."""
    return path.is_file() and path.name.endswith(TARBALL_SUFFIXES)


def digest_artifact(path: Path) -> str:
    """Return the content digest of an artifact (tarball or directory).

    Tarballs hash their bytes. Directories hash the sorted relative paths
    together with each file's checksum, so the digest is independent of
    timestamps and directory enumeration order.
    """
    path = path.expanduser()
    if is_tarball(path):
        return compute_checksum(path)
    if not path.is_dir():
        raise ArtifactError(f"Artifact {path} must be a directory or a tar archive.")

    digest = hashlib.sha256()
    for file_path in sorted(p for p in path.rglob("*") if p.is_file() or p.is_symlink()):
        relative = file_path.relative_to(path).as_posix()
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        if file_path.is_symlink():
            digest.update(b"link:" + os.readlink(file_path).encode("utf-8"))
        else:
            digest.update(compute_checksum(file_path).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def unpack_artifact(source: Path, destination: Path) -> None:
    """Materialise *source* into the (new) directory *destination*.

    The tree is built in a sibling temporary directory and renamed into place
    so that *destination* is either absent or complete.
    """
    source = source.expanduser()
    staging = destination.with_name(f".{destination.name}.partial")
    if staging.exists():
        shutil.rmtree(staging)
    destination.parent.mkdir(parents=True, exist_ok=True)

    try:
        if is_tarball(source):
            staging.mkdir(parents=True)
            _extract_tarball(source, staging)
        elif source.is_dir():
            shutil.copytree(source, staging, symlinks=True)
        else:
            raise ArtifactError(f"Artifact {source} must be a directory or a tar archive.")
        os.replace(staging, destination)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def _extract_tarball(archive: Path, destination: Path) -> None:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArtifactError("The 'tar' command is required to unpack artifacts.")

    cmd = [tar_bin]
    if archive.name.endswith(".tar.zst"):
        cmd.append("--zstd")
    cmd.extend(["-xf", str(archive), "-C", str(destination), "--no-same-owner"])
    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArtifactError(message.strip())


__all__ = [
    "ArtifactError",
    "compute_checksum",
    "digest_artifact",
    "is_tarball",
    "unpack_artifact",
    "write_checksum_file",
]
