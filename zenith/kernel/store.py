import hashlib
import json
import logging
import mmap
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..errors import FormatMismatch
from ..ephemeris.catalog import BodyCatalog
from .format import (
    HEADER_SIZE, Kernel, KernelHeader, PositionRecord,
    check_record, check_size, dumps, loads, unpack_record
)

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".sha256.json"


def sha256(path: str) -> str:
    """Calculate SHA256 hash of a file."""
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1 << 20), b""):  # 1MB chunks
                h.update(chunk)
        return h.hexdigest()
    except (IOError, OSError) as e:
        logger.error(f"Failed to hash file {path}: {e}")
        raise


def manifest_path(path: str) -> str:
    return path + MANIFEST_SUFFIX


def _atomic_write(path: str, data: bytes) -> None:
    """Write to a temp file in the target directory, fsync, then rename over path."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".zk", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def write_kernel(kernel: Kernel, path: str, checksum: bool = True) -> Optional[str]:
    """
    Publish a kernel file atomically.

    Readers see either the previous file or the complete new one, never a
    partial write.

    Args:
        kernel: Kernel to serialize
        path: Target file path
        checksum: Also write a SHA-256 manifest next to the kernel

    Returns:
        Hex digest of the written file when checksum is enabled, else None
    """
    data = dumps(kernel)
    _atomic_write(path, data)
    logger.info(f"Wrote {kernel.tier.name} kernel ({len(data)} bytes, "
                f"{len(kernel.records)} bodies) to {path}")

    if not checksum:
        return None

    digest = hashlib.sha256(data).hexdigest()
    manifest = {
        "file": os.path.basename(path),
        "created": datetime.now(timezone.utc).isoformat(),
        "size": len(data),
        "sha256": digest,
        "tier": kernel.tier.name.lower(),
        "base_epoch": kernel.base_epoch,
        "catalog_fingerprint": f"{kernel.header.catalog_fingerprint:08x}"
    }
    _atomic_write(manifest_path(path),
                  json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8"))
    logger.debug(f"Wrote checksum manifest {manifest_path(path)} -> {digest}")
    return digest


def verify_checksum(path: str) -> bool:
    """
    Verify a kernel file against its SHA-256 manifest.

    Returns:
        True if the manifest exists and matches, False otherwise
    """
    manifest_file = manifest_path(path)
    try:
        with open(manifest_file, "r") as f:
            manifest = json.load(f)
    except (IOError, json.JSONDecodeError) as e:
        logger.error(f"Failed to load checksum manifest {manifest_file}: {e}")
        return False

    expected_hash = manifest.get("sha256")
    if not expected_hash:
        logger.warning(f"No sha256 entry in manifest {manifest_file}")
        return False

    if not os.path.exists(path):
        logger.error(f"Kernel file missing: {path}")
        return False

    actual_hash = sha256(path)
    if actual_hash != expected_hash:
        logger.error(f"Checksum mismatch for {path}: expected {expected_hash}, got {actual_hash}")
        return False

    logger.debug(f"Checksum verified for {path}")
    return True


def read_kernel(path: str, catalog: BodyCatalog) -> Kernel:
    """
    Read a whole kernel file into memory.

    Raises:
        FileNotFoundError: If the file doesn't exist
        FormatMismatch: If the file does not match the catalog
    """
    with open(path, "rb") as f:
        data = f.read()
    return loads(data, catalog)


class KernelReader:
    """
    Memory-mapped, read-only view of a kernel file.

    The header, fingerprint and length are validated when the reader opens;
    records are decoded on demand by offset and rejected with FormatMismatch
    when a longitude is out of range.
    """

    def __init__(self, path: str, catalog: BodyCatalog):
        self.path = path
        self.catalog = catalog
        self.header: Optional[KernelHeader] = None
        self._file = None
        self._map: Optional[mmap.mmap] = None

    def open(self) -> "KernelReader":
        if self._map is not None:
            return self

        self._file = open(self.path, "rb")
        try:
            size = os.fstat(self._file.fileno()).st_size
            if size < HEADER_SIZE:
                raise FormatMismatch(f"Kernel {self.path} is {size} bytes, shorter than the "
                                     f"{HEADER_SIZE}-byte header", actual=size)
            self._map = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
            self.header = KernelHeader.unpack(self._map[:HEADER_SIZE])
            check_size(self.header, size, self.catalog)
        except BaseException:
            self.close()
            raise

        logger.debug(f"Mapped kernel {self.path} ({size} bytes, {self.header.tier.name})")
        return self

    def close(self) -> None:
        if self._map is not None:
            self._map.close()
            self._map = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def _require_open(self) -> mmap.mmap:
        if self._map is None:
            raise RuntimeError(f"Kernel reader for {self.path} is not open")
        return self._map

    def __len__(self) -> int:
        return len(self.catalog)

    def record(self, index: int) -> PositionRecord:
        data = self._require_open()
        if not 0 <= index < len(self.catalog):
            raise IndexError(f"Body index {index} out of range for {len(self.catalog)} bodies")
        layout = self.header.tier.layout
        record = unpack_record(data, HEADER_SIZE + index * layout.record_size, layout)
        check_record(record, layout, index)
        return record

    def longitude(self, index: int) -> Optional[float]:
        record = self.record(index)
        angle = self.header.tier.layout.angle
        if record.longitude == angle.sentinel:
            return None
        return angle.decode(record.longitude)

    def kernel(self) -> Kernel:
        self._require_open()
        return Kernel(self.header, tuple(self.record(i) for i in range(len(self.catalog))))

    def info(self) -> Dict[str, Any]:
        self._require_open()
        return {
            "path": self.path,
            "size": len(self._map),
            "tier": self.header.tier.name.lower(),
            "base_epoch": self.header.base_epoch,
            "catalog": self.catalog.name,
            "catalog_fingerprint": f"{self.header.catalog_fingerprint:08x}",
            "bodies": len(self.catalog)
        }

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
