"""Ubuntu cloud image artifacts for machina."""

from __future__ import annotations

import gzip
import os
import shutil
import tarfile
from pathlib import Path

from machina.constants import (
    CLOUD_IMAGES_URL,
    IMAGES_DIR_NAME,
    INITRD_FILE_NAME,
    KERNEL_FILE_NAME,
    ROOT_DISK_NAME,
    ROOT_DISK_SIZE,
)
from machina.exceptions import DownloadError
from machina.models import BootArtifacts, Distribution
from machina.utils import LogFn, download_file_with_retry, ensure_directory, log

GZIP_MAGIC = b"\x1f\x8b"


def _is_gzip(path: Path) -> bool:
    with open(path, "rb") as handle:
        return handle.read(2) == GZIP_MAGIC


class DistributionArtifacts:
    """Download and cache kernel, initrd and root image per release."""

    def __init__(self, workdir: Path, retries: int = 3, log: LogFn = log) -> None:
        self.images_dir = workdir / IMAGES_DIR_NAME
        self.retries = retries
        self._log = log

    def image_directory(self, dist: Distribution) -> Path:
        return self.images_dir / dist.release

    def _prefix(self, dist: Distribution) -> str:
        return f"{dist.release}-server-cloudimg-{dist.arch}"

    def kernel_path(self, dist: Distribution) -> Path:
        return self.image_directory(dist) / f"{self._prefix(dist)}-vmlinuz-generic"

    def initrd_path(self, dist: Distribution) -> Path:
        return self.image_directory(dist) / f"{self._prefix(dist)}-initrd-generic"

    def image_path(self, dist: Distribution) -> Path:
        return self.image_directory(dist) / f"{self._prefix(dist)}.img"

    def _unpacked_url(self, dist: Distribution, suffix: str) -> str:
        return f"{CLOUD_IMAGES_URL}/{dist.release}/current/unpacked/{self._prefix(dist)}-{suffix}"

    def ensure(self, dist: Distribution) -> BootArtifacts:
        """Make sure every artifact of ``dist`` is cached and return their paths."""
        ensure_directory(self.image_directory(dist))
        self._ensure_initrd(dist)
        self._ensure_kernel(dist)
        self._ensure_image(dist)
        return BootArtifacts(
            kernel=self.kernel_path(dist),
            initrd=self.initrd_path(dist),
            image=self.image_path(dist),
        )

    def _ensure_initrd(self, dist: Distribution) -> None:
        target = self.initrd_path(dist)
        if target.exists():
            self._log("DEBUG", f"InitRD {dist.release} at {target} already exists")
            return
        download_file_with_retry(
            self._unpacked_url(dist, "initrd-generic"),
            target,
            label="Downloading initrd",
            retries=self.retries,
            log=self._log,
        )

    def _ensure_kernel(self, dist: Distribution) -> None:
        target = self.kernel_path(dist)
        if target.exists():
            self._log("DEBUG", f"Kernel {dist.release} at {target} already exists")
            return
        compressed = target.with_name(target.name + ".gz")
        download_file_with_retry(
            self._unpacked_url(dist, "vmlinuz-generic"),
            compressed,
            label="Downloading kernel",
            retries=self.retries,
            log=self._log,
        )
        # arm64 kernels are published gzip-compressed, amd64 ones are not.
        if _is_gzip(compressed):
            partial = target.with_name(target.name + ".partial")
            try:
                with gzip.open(compressed, "rb") as src, open(partial, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            except (OSError, EOFError) as exc:
                partial.unlink(missing_ok=True)
                raise DownloadError(f"Cannot decompress kernel {compressed}: {exc}") from exc
            partial.replace(target)
            compressed.unlink(missing_ok=True)
        else:
            compressed.replace(target)

    def _ensure_image(self, dist: Distribution) -> None:
        target = self.image_path(dist)
        if target.exists():
            self._log("DEBUG", f"Image {dist.release} at {target} already exists")
            return
        archive = self.image_directory(dist) / f"{self._prefix(dist)}.tar.gz"
        if not archive.exists():
            download_file_with_retry(
                f"{CLOUD_IMAGES_URL}/{dist.release}/current/{archive.name}",
                archive,
                label="Downloading root image",
                retries=self.retries,
                log=self._log,
            )
        self._log("INFO", f"Extracting {archive.name}...")
        try:
            with tarfile.open(archive, "r:gz") as tar:
                member = next(
                    (m for m in tar.getmembers() if m.isfile() and m.name.endswith(".img")),
                    None,
                )
                if member is None:
                    raise DownloadError(f"No disk image found in {archive}")
                source = tar.extractfile(member)
                if source is None:
                    raise DownloadError(f"Cannot read {member.name} from {archive}")
                partial = target.with_name(target.name + ".partial")
                with source, open(partial, "wb") as dst:
                    shutil.copyfileobj(source, dst, 1024 * 1024)
        except (tarfile.TarError, OSError) as exc:
            raise DownloadError(f"Cannot extract {archive}: {exc}") from exc
        partial.replace(target)
        archive.unlink(missing_ok=True)
        self._log("SUCCESS", f"Root image ready at {target}")

    def prepare(self, dist: Distribution, machine_dir: Path) -> BootArtifacts:
        """Copy the cached artifacts into ``machine_dir`` unless already there."""
        shared = self.ensure(dist)
        kernel = self._clone_if_absent(shared.kernel, machine_dir / KERNEL_FILE_NAME)
        initrd = self._clone_if_absent(shared.initrd, machine_dir / INITRD_FILE_NAME)
        disk = self._clone_if_absent(shared.image, machine_dir / ROOT_DISK_NAME)
        size = disk.stat().st_size
        if size < ROOT_DISK_SIZE:
            self._log("INFO", f"Resizing disk {size} to {ROOT_DISK_SIZE}")
            os.truncate(disk, ROOT_DISK_SIZE)
        return BootArtifacts(kernel=kernel, initrd=initrd, image=disk)

    def _clone_if_absent(self, source: Path, destination: Path) -> Path:
        if destination.exists():
            self._log("DEBUG", f"Machine file {destination} exists, ignore copy")
            return destination
        partial = destination.with_name(destination.name + ".partial")
        shutil.copyfile(source, partial)
        partial.replace(destination)
        return destination
