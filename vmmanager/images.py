"""Base disk image download, extraction and resizing."""

from __future__ import annotations

import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from vmmanager.constants import ARCHIVE_SUFFIXES, BACKING_SUFFIX, IMAGE_SUFFIXES, QEMU_IMG
from vmmanager.exceptions import ProvisioningError
from vmmanager.utils import download_file, ensure_directory, log, run


def is_archive_url(url: str) -> bool:
    path = urlparse(url).path.lower()
    return any(path.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def backing_path(image: Path) -> Path:
    """Where the original image is kept when a copy-on-write overlay replaces it."""
    return image.with_name(image.stem + BACKING_SUFFIX)


def find_archive_images(root: Path) -> List[Path]:
    return sorted(
        path for path in root.rglob("*")
        if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
    )


def _extract_archive(archive: Path, destination: Path) -> None:
    try:
        with tarfile.open(archive, "r:*") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(destination, filter="data")
            else:  # pragma: no cover
                tar.extractall(destination)
    except (tarfile.TarError, OSError) as exc:
        raise ProvisioningError(f"Failed to extract {archive.name}: {exc}") from exc


def fetch_archive_image(url: str, target: Path) -> None:
    """Download an archive, extract it in scratch space and move its disk image to ``target``."""
    with tempfile.TemporaryDirectory(dir=target.parent, prefix=f".{target.stem}-extract-") as scratch:
        scratch_dir = Path(scratch)
        archive = scratch_dir / (Path(urlparse(url).path).name or "image-archive")
        download_file(url, archive, label="Downloading image archive")
        log("INFO", f"Extracting {archive.name}...")
        extract_dir = scratch_dir / "contents"
        extract_dir.mkdir()
        _extract_archive(archive, extract_dir)

        images = find_archive_images(extract_dir)
        if not images:
            raise ProvisioningError(
                f"No disk image ({', '.join(IMAGE_SUFFIXES)}) found in archive {archive.name}"
            )
        if len(images) > 1:
            listing = ", ".join(str(p.relative_to(extract_dir)) for p in images)
            raise ProvisioningError(f"Archive {archive.name} contains several disk images: {listing}")
        log("INFO", f"Found disk image: {images[0].name}")
        images[0].replace(target)
    log("SUCCESS", "Image extracted successfully")


def resize_disk(image: Path, size: str) -> None:
    try:
        run([QEMU_IMG, "resize", str(image), size], capture_output=True)
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip()
        raise ProvisioningError(f"Failed to resize {image} to {size}: {detail or exc}") from exc


def _rebuild_with_size(image: Path, size: str) -> None:
    base = backing_path(image)
    image.replace(base)
    overlay = run(
        [QEMU_IMG, "create", "-f", "qcow2", "-F", "qcow2", "-b", str(base.resolve()), str(image), size],
        check=False,
        capture_output=True,
    )
    if overlay.returncode == 0:
        log("INFO", f"Created {size} overlay on top of {base.name}")
        return
    log(
        "WARN",
        f"Could not create an overlay for {image.name}; creating a blank {size} disk. "
        "The downloaded image contents are discarded.",
    )
    image.unlink(missing_ok=True)
    base.unlink(missing_ok=True)
    try:
        run([QEMU_IMG, "create", "-f", "qcow2", str(image), size], capture_output=True)
    except subprocess.CalledProcessError as exc:
        raise ProvisioningError(f"Failed to create disk image {image}: {(exc.stderr or '').strip() or exc}") from exc


def ensure_disk_image(url: str, target: Path, size: str) -> Path:
    """Make sure ``target`` holds a disk image of ``size`` built from ``url``."""
    ensure_directory(target.parent)
    if target.exists():
        log("INFO", f"Image file {target} already exists. Skipping download.")
    elif is_archive_url(url):
        fetch_archive_image(url, target)
    else:
        download_file(url, target, label="Downloading image")

    try:
        resize_disk(target, size)
    except ProvisioningError as exc:
        log("WARN", f"{exc}; rebuilding disk with the requested size")
        _rebuild_with_size(target, size)
    return target
