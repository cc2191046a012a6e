"""Sync client implementation."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import requests
import zstandard as zstd

from .collection import (
    CATALOG_DELETE_ORDER,
    CATALOG_INSERT_ORDER,
    CATALOG_TABLES,
    CardCollection,
    StorageError,
    StorageErrorKind,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://get-diced.com/"
USER_AGENT = "getdiced-sync/1.0"

CARDS_MANIFEST_PATH = "api/cards/manifest"
CARDS_DATABASE_PATH = "api/cards/database"
IMAGES_MANIFEST_PATH = "api/images/manifest"
IMAGES_PATH = "images/mobile"
DOWNLOAD_CHUNK_SIZE = 65_536

IMAGES_DIR = "synced_images"
IMAGE_EXTENSION = ".webp"
LOCAL_MANIFEST_FILE = "local_manifest.json"
BUNDLED_MANIFEST_FILE = "images_manifest.json"
DEFAULT_BUNDLED_MANIFEST_PATH = Path(__file__).parent / "data" / BUNDLED_MANIFEST_FILE
CHECKPOINT_EVERY = 25

VERSION_KEY = "current_catalog_version"
LAST_SYNC_KEY = "last_sync_timestamp"
PAYLOAD_ALIAS = "payload"

_SHA256_RE = re.compile(r"^(?:sha256:)?([0-9a-fA-F]{64})$")

# Clients sharing a local manifest file share one lock.
_manifest_locks: dict[Path, threading.RLock] = {}
_manifest_locks_guard = threading.Lock()


def _manifest_lock_for(path: Path) -> threading.RLock:
    key = path.resolve()
    with _manifest_locks_guard:
        return _manifest_locks.setdefault(key, threading.RLock())


def _sha256_hex(value: str) -> Optional[str]:
    """Normalise a manifest hash to lowercase hex if it is a SHA-256 digest."""
    m = _SHA256_RE.match(value or "")
    return m.group(1).lower() if m else None


def _ignore_progress(*_args) -> None:
    pass


# --- Config ---


@dataclass
class SyncConfig:
    """Remote endpoint and timeouts."""

    endpoint: str = DEFAULT_ENDPOINT
    io_timeout_secs: int = 30
    download_timeout_secs: int = 60
    user_agent: str = USER_AGENT

    @classmethod
    def with_endpoint(cls, endpoint: str, **kwargs: Any) -> SyncConfig:
        if endpoint and not endpoint.endswith("/"):
            endpoint += "/"
        return cls(endpoint=endpoint or DEFAULT_ENDPOINT, **kwargs)

    @classmethod
    def from_env(cls) -> SyncConfig:
        return cls.with_endpoint(
            os.getenv("GETDICED_ENDPOINT", DEFAULT_ENDPOINT),
            io_timeout_secs=int(os.getenv("GETDICED_TIMEOUT", "30")),
            download_timeout_secs=int(os.getenv("GETDICED_DOWNLOAD_TIMEOUT", "60")),
        )

    def url(self, path: str) -> str:
        return f"{self.endpoint.rstrip('/')}/{path.lstrip('/')}"


# --- Exceptions ---


class SyncErrorKind(Enum):
    NETWORK_UNAVAILABLE = "network_unavailable"
    MANIFEST_MALFORMED = "manifest_malformed"
    DOWNLOAD_INCOMPLETE = "download_incomplete"
    MERGE_TRANSACTION_FAILED = "merge_transaction_failed"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    CANCELLED = "cancelled"


class SyncError(Exception):
    kind = SyncErrorKind.NETWORK_UNAVAILABLE

    def __init__(
        self,
        message: str,
        kind: Optional[SyncErrorKind] = None,
        underlying: Optional[BaseException] = None,
    ):
        if kind is not None:
            self.kind = kind
        self.underlying = underlying
        super().__init__(message)


class HttpStatusError(SyncError):
    kind = SyncErrorKind.DOWNLOAD_INCOMPLETE

    def __init__(self, status_code: int, url: str):
        self.status_code, self.url = status_code, url
        super().__init__(f"HTTP {status_code} from {url}")


class ManifestMalformedError(SyncError):
    kind = SyncErrorKind.MANIFEST_MALFORMED


class ManifestFetchError(SyncError):
    pass


class DownloadError(SyncError):
    kind = SyncErrorKind.DOWNLOAD_INCOMPLETE


class MergeError(SyncError):
    kind = SyncErrorKind.MERGE_TRANSACTION_FAILED


# --- Data Classes ---


def _field(d: Any, key: str, typ: type, where: str) -> Any:
    if not isinstance(d, dict):
        raise ManifestMalformedError(f"{where}: expected an object")
    if key not in d:
        raise ManifestMalformedError(f"{where}: missing field '{key}'")
    value = d[key]
    if not isinstance(value, typ) or (typ is int and isinstance(value, bool)):
        raise ManifestMalformedError(
            f"{where}: field '{key}' must be {typ.__name__}, got {type(value).__name__}"
        )
    return value


@dataclass
class CatalogManifest:
    """Descriptor of the published catalog payload."""

    version: int
    generated: str
    filename: str
    hash: str
    size_bytes: int
    card_count: int
    related_finishes_count: int
    related_cards_count: int

    @property
    def is_compressed(self) -> bool:
        return self.filename.endswith(".zst")

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "generated": self.generated,
            "filename": self.filename,
            "hash": self.hash,
            "size_bytes": self.size_bytes,
            "card_count": self.card_count,
            "related_finishes_count": self.related_finishes_count,
            "related_cards_count": self.related_cards_count,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CatalogManifest:
        where = "cards manifest"
        return cls(
            version=_field(d, "version", int, where),
            generated=_field(d, "generated", str, where),
            filename=_field(d, "filename", str, where),
            hash=_field(d, "hash", str, where),
            size_bytes=_field(d, "size_bytes", int, where),
            card_count=_field(d, "card_count", int, where),
            related_finishes_count=_field(d, "related_finishes_count", int, where),
            related_cards_count=_field(d, "related_cards_count", int, where),
        )


@dataclass
class ImageInfo:
    path: str
    hash: str

    def to_dict(self) -> dict:
        return {"path": self.path, "hash": self.hash}

    @classmethod
    def from_dict(cls, d: dict, card_id: str = "") -> ImageInfo:
        where = f"image '{card_id}'"
        return cls(path=_field(d, "path", str, where), hash=_field(d, "hash", str, where))


@dataclass
class ImageManifest:
    """Card id -> image path/hash mapping, used both remotely and on disk."""

    version: int = 0
    generated: str = ""
    image_count: int = 0
    images: dict[str, ImageInfo] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "generated": self.generated,
            "image_count": self.image_count,
            "images": {cid: info.to_dict() for cid, info in self.images.items()},
        }

    @classmethod
    def from_dict(cls, d: dict) -> ImageManifest:
        where = "images manifest"
        images = _field(d, "images", dict, where)
        return cls(
            version=_field(d, "version", int, where),
            generated=_field(d, "generated", str, where),
            image_count=_field(d, "image_count", int, where),
            images={cid: ImageInfo.from_dict(info, cid) for cid, info in images.items()},
        )


class CatalogSyncPhase(Enum):
    IDLE = "idle"
    CHECKING_MANIFEST = "checking_manifest"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    DONE = "done"
    ERROR = "error"


@dataclass
class UpdateCheck:
    """Result of check_for_updates(); ``error`` is set instead of raising."""

    available: bool
    current_version: int
    latest_version: Optional[int] = None
    message: str = ""
    error: Optional[str] = None


@dataclass
class CatalogSyncResult:
    updated: bool
    version: int
    card_count: int = 0
    message: str = ""


@dataclass
class ImageSyncResult:
    downloaded: int = 0
    total: int = 0
    cancelled: bool = False
    failed: list[str] = field(default_factory=list)


# --- HTTP Client ---


class HttpSyncClient:
    """HTTP client for the catalog and image endpoints."""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or SyncConfig()
        self._session = session
        self._owns_session = session is None

    def close(self):
        if self._owns_session and self._session:
            self._session.close()
            self._session = None

    def _get(
        self, path: str, stream: bool = False, timeout: Optional[int] = None
    ) -> requests.Response:
        if self._session is None:
            self._session = requests.Session()

        url = self.config.url(path)
        try:
            resp = self._session.get(
                url,
                stream=stream,
                timeout=timeout or self.config.io_timeout_secs,
                headers={"User-Agent": self.config.user_agent},
            )
        except requests.RequestException as e:
            raise SyncError(
                f"Network error for {url}: {e}", SyncErrorKind.NETWORK_UNAVAILABLE, e
            ) from e

        if not 200 <= resp.status_code < 300:
            resp.close()
            raise HttpStatusError(resp.status_code, url)
        return resp

    def _json(self, path: str) -> Any:
        resp = self._get(path)
        try:
            return resp.json()
        except ValueError as e:
            raise ManifestMalformedError(f"Invalid JSON from {path}", underlying=e) from e

    def cards_manifest(self) -> CatalogManifest:
        return CatalogManifest.from_dict(self._json(CARDS_MANIFEST_PATH))

    def image_manifest(self) -> ImageManifest:
        return ImageManifest.from_dict(self._json(IMAGES_MANIFEST_PATH))

    def download_catalog(self, dest: Path, manifest: CatalogManifest) -> Path:
        """
        Stream the catalog payload into ``dest``.

        The byte count is checked against manifest.size_bytes and the body
        against manifest.hash when it is a SHA-256 digest. A ``.zst``
        payload is decompressed into ``dest`` after verification.
        """
        dest = Path(dest)
        raw_dest = dest.with_name(dest.name + ".zst") if manifest.is_compressed else dest
        resp = self._get(
            CARDS_DATABASE_PATH, stream=True, timeout=self.config.download_timeout_secs
        )

        digest = hashlib.sha256()
        received = 0
        try:
            with resp, open(raw_dest, "wb") as f:
                for chunk in resp.iter_content(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
                    digest.update(chunk)
                    received += len(chunk)
        except requests.RequestException as e:
            raise SyncError(
                f"Download interrupted after {received} bytes",
                SyncErrorKind.DOWNLOAD_INCOMPLETE,
                e,
            ) from e

        if manifest.size_bytes > 0 and received != manifest.size_bytes:
            raise SyncError(
                f"Short read: got {received} of {manifest.size_bytes} bytes",
                SyncErrorKind.DOWNLOAD_INCOMPLETE,
            )

        expected = _sha256_hex(manifest.hash)
        if expected is None:
            logger.debug("Manifest hash %r is not SHA-256, skipping check", manifest.hash)
        elif digest.hexdigest() != expected:
            raise SyncError(
                f"Checksum mismatch for {manifest.filename}",
                SyncErrorKind.DOWNLOAD_INCOMPLETE,
            )

        if manifest.is_compressed:
            try:
                with open(raw_dest, "rb") as src, open(dest, "wb") as out:
                    zstd.ZstdDecompressor().copy_stream(src, out)
            except zstd.ZstdError as e:
                raise SyncError(
                    f"Corrupt compressed payload {manifest.filename}",
                    SyncErrorKind.DOWNLOAD_INCOMPLETE,
                    e,
                ) from e
            finally:
                raw_dest.unlink(missing_ok=True)

        return dest

    def download_image(self, path: str) -> bytes:
        resp = self._get(f"{IMAGES_PATH}/{path.lstrip('/')}")
        try:
            return resp.content
        except requests.RequestException as e:
            raise SyncError(
                f"Image download interrupted: {path}", SyncErrorKind.DOWNLOAD_INCOMPLETE, e
            ) from e


# --- State Interface ---


class SyncStateInterface(ABC):
    """Durable key-value state injected into the sync clients."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any: ...
    @abstractmethod
    def set(self, key: str, value: Any) -> None: ...


# --- Catalog Sync Client ---


class CatalogSyncClient:
    """
    Keeps the catalog zone of a CardCollection in step with the server.

    Usage:
        client = CatalogSyncClient(col, JsonFileSyncState(data_dir / "sync_state.json"))
        if client.check_for_updates().available:
            client.sync_database(progress=lambda phase, fraction: ...)
        client.close()

    The version marker in ``state`` only moves forward, and only after the
    merge transaction has committed; any failure leaves it where it was so
    the same version is attempted again on the next call.
    """

    def __init__(
        self,
        col: CardCollection,
        state: SyncStateInterface,
        config: Optional[SyncConfig] = None,
        session: Optional[requests.Session] = None,
        http: Optional[HttpSyncClient] = None,
        work_dir: Optional[str | Path] = None,
    ):
        self.col = col
        self.state = state
        self.http = http or HttpSyncClient(config, session)
        self._owns_http = http is None
        self.work_dir = Path(work_dir) if work_dir else None

        self.phase = CatalogSyncPhase.IDLE
        self.status_message = ""
        self.last_error: Optional[SyncError] = None
        self._progress: Callable[[str, float], None] = _ignore_progress
        self._sync_lock = threading.Lock()
        self._cancel = threading.Event()

    def close(self):
        if self._owns_http:
            self.http.close()

    @property
    def current_version(self) -> int:
        return int(self.state.get(VERSION_KEY, 0) or 0)

    @property
    def last_sync_timestamp(self) -> Optional[str]:
        return self.state.get(LAST_SYNC_KEY)

    def cancel(self) -> None:
        """Abort an in-flight sync_database(); a running merge is interrupted and rolled back."""
        self._cancel.set()
        if self.phase == CatalogSyncPhase.MERGING:
            try:
                self.col.db.interrupt()
            except StorageError:
                logger.debug("Store already closed, nothing to interrupt")

    def check_for_updates(self) -> UpdateCheck:
        """Compare the remote manifest with the local version. Never raises sync errors."""
        current = self.current_version
        try:
            manifest = self.http.cards_manifest()
        except SyncError as e:
            return UpdateCheck(
                available=False,
                current_version=current,
                message=f"Failed to check for updates: {e}",
                error=str(e),
            )

        available = manifest.version > current
        if available:
            message = f"Update available: v{manifest.version} (Current: v{current})"
        else:
            message = f"Database is up to date (v{current})"
        return UpdateCheck(available, current, manifest.version, message)

    def sync_database(
        self, progress: Optional[Callable[[str, float], None]] = None
    ) -> CatalogSyncResult:
        """
        Download and merge the published catalog if it is newer than ours.

        ``progress(phase, fraction)`` is called as the sync advances.
        Raises ManifestFetchError, DownloadError or MergeError; nothing is
        retried automatically.
        """
        with self._sync_lock:
            self._cancel.clear()
            self._progress = progress or _ignore_progress
            self.last_error = None
            try:
                result = self._sync_database()
                self._set_phase(CatalogSyncPhase.DONE, result.message, 1.0)
                return result
            except SyncError as e:
                self.last_error = e
                self._set_phase(CatalogSyncPhase.ERROR, f"Sync failed: {e}")
                raise
            finally:
                self._progress = _ignore_progress

    def _set_phase(
        self, phase: CatalogSyncPhase, message: str, fraction: Optional[float] = None
    ) -> None:
        self.phase, self.status_message = phase, message
        logger.info(message)
        if fraction is not None:
            self._progress(phase.value, fraction)

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise SyncError("Sync cancelled", SyncErrorKind.CANCELLED)

    def _sync_database(self) -> CatalogSyncResult:
        self._set_phase(CatalogSyncPhase.CHECKING_MANIFEST, "Checking for updates...", 0.1)
        try:
            manifest = self.http.cards_manifest()
        except SyncError as e:
            raise ManifestFetchError(
                f"Failed to fetch catalog manifest: {e}", e.kind, e
            ) from e

        current = self.current_version
        if manifest.version <= current:
            self._record_sync_time()
            return CatalogSyncResult(
                updated=False,
                version=current,
                message=f"Database is up to date (v{current})",
            )

        self._check_cancelled()
        tmp_dir = Path(tempfile.mkdtemp(prefix="getdiced-sync-", dir=self.work_dir))
        try:
            payload = tmp_dir / "cards_temp.db"
            size_mb = manifest.size_bytes // 1024 // 1024
            self._set_phase(
                CatalogSyncPhase.DOWNLOADING,
                f"Downloading database ({size_mb} MB)...",
                0.3,
            )
            try:
                self.http.download_catalog(payload, manifest)
            except SyncError as e:
                raise DownloadError(
                    f"Failed to download catalog v{manifest.version}: {e}", e.kind, e
                ) from e
            except OSError as e:
                raise DownloadError(
                    f"Cannot write catalog payload: {e}",
                    SyncErrorKind.STORAGE_UNAVAILABLE,
                    e,
                ) from e

            self._check_cancelled()
            self._set_phase(CatalogSyncPhase.MERGING, "Installing database...", 0.7)
            counts = self._merge_payload(payload)

            try:
                self._advance_version(manifest.version)
                self._record_sync_time()
            except OSError as e:
                raise SyncError(
                    f"Merged catalog v{manifest.version} but could not save version: {e}",
                    SyncErrorKind.STORAGE_UNAVAILABLE,
                    e,
                ) from e
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

        self._check_counts(manifest, counts)
        return CatalogSyncResult(
            updated=True,
            version=manifest.version,
            card_count=counts["cards"],
            message=f"Database updated to v{manifest.version}",
        )

    def _merge_payload(self, payload: Path) -> dict[str, int]:
        """
        Replace the catalog tables with the payload's rows in one transaction.

        The payload is attached before BEGIN and detached after COMMIT;
        every table is copied with a single INSERT ... SELECT.
        """

        def replace_catalog(db: sqlite3.Connection) -> dict[str, int]:
            for table in CATALOG_DELETE_ORDER:
                db.execute(f"DELETE FROM main.{table}")

            counts = {}
            for table in CATALOG_INSERT_ORDER:
                self._check_cancelled()
                cols = ", ".join(CATALOG_TABLES[table])
                cur = db.execute(
                    f"INSERT INTO main.{table} ({cols}) "
                    f"SELECT {cols} FROM {PAYLOAD_ALIAS}.{table}"
                )
                counts[table] = cur.rowcount
                logger.info("Inserted %d rows into %s", cur.rowcount, table)
            return counts

        try:
            with self.col.attached(payload, PAYLOAD_ALIAS):
                self._set_phase(CatalogSyncPhase.MERGING, "Merging card data...", 0.9)
                return self.col.run_in_transaction(replace_catalog)
        except (sqlite3.Error, StorageError) as e:
            if self._cancel.is_set():
                kind = SyncErrorKind.CANCELLED
            elif isinstance(e, StorageError) and e.kind == StorageErrorKind.UNAVAILABLE:
                kind = SyncErrorKind.STORAGE_UNAVAILABLE
            else:
                kind = SyncErrorKind.MERGE_TRANSACTION_FAILED
            logger.error("Database merge failed: %s", e)
            raise MergeError(f"Merge failed: {e}", kind, e) from e

    def _advance_version(self, version: int) -> None:
        if version > self.current_version:
            self.state.set(VERSION_KEY, version)

    def _record_sync_time(self) -> None:
        self.state.set(LAST_SYNC_KEY, datetime.now(timezone.utc).isoformat())

    def _check_counts(self, manifest: CatalogManifest, counts: dict[str, int]) -> None:
        expected = {
            "cards": manifest.card_count,
            "card_related_finishes": manifest.related_finishes_count,
            "card_related_cards": manifest.related_cards_count,
        }
        for table, want in expected.items():
            if counts.get(table) != want:
                logger.warning(
                    "Catalog v%d: %s has %s rows, manifest says %d",
                    manifest.version,
                    table,
                    counts.get(table),
                    want,
                )


# --- Image Sync Client ---


class ImageSyncClient:
    """
    Incremental, hash-based card image sync.

    Usage:
        images = ImageSyncClient(data_dir / "synced_images")
        result = images.sync_images(progress=lambda done, total: ...)
        images.close()

    The local view of what is on disk is the bundled baseline manifest
    overlaid with ``local_manifest.json`` (kept next to the images
    directory). Only entries whose remote hash differs from that view are
    downloaded, and the local manifest is checkpointed as downloads land so
    an interrupted run picks up where it stopped.
    """

    def __init__(
        self,
        images_dir: str | Path,
        config: Optional[SyncConfig] = None,
        session: Optional[requests.Session] = None,
        http: Optional[HttpSyncClient] = None,
        manifest_path: Optional[str | Path] = None,
        bundled_manifest_path: Optional[str | Path] = None,
        checkpoint_every: int = CHECKPOINT_EVERY,
    ):
        self.images_dir = Path(images_dir)
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.manifest_path = (
            Path(manifest_path)
            if manifest_path
            else self.images_dir.parent / LOCAL_MANIFEST_FILE
        )
        self.bundled_manifest_path = (
            Path(bundled_manifest_path)
            if bundled_manifest_path
            else DEFAULT_BUNDLED_MANIFEST_PATH
        )
        self.checkpoint_every = max(1, checkpoint_every)

        self.http = http or HttpSyncClient(config, session)
        self._owns_http = http is None
        self._run_lock = _manifest_lock_for(self.manifest_path)
        self._manifest_lock = self._run_lock
        self._cancel = threading.Event()

    def close(self):
        if self._owns_http:
            self.http.close()

    def cancel(self) -> None:
        """Stop sync_images() at the next image boundary."""
        self._cancel.set()

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def image_path(self, card_id: str) -> Path:
        """Local path for a card image, sharded by the first two id characters."""
        if not card_id or "/" in card_id or "\\" in card_id or card_id.startswith("."):
            raise ValueError(f"Invalid card id for image path: {card_id!r}")
        return self.images_dir / card_id[:2] / f"{card_id}{IMAGE_EXTENSION}"

    def get_synced_image_file(self, card_id: str) -> Optional[Path]:
        try:
            path = self.image_path(card_id)
        except ValueError:
            return None
        return path if path.is_file() else None

    def _write_image(self, card_id: str, data: bytes) -> Path:
        dest = self.image_path(card_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{card_id}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, dest)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return dest

    # -------------------------------------------------------------------------
    # Manifests
    # -------------------------------------------------------------------------

    def _read_manifest(self, path: Path) -> Optional[ImageManifest]:
        if not path.is_file():
            return None
        try:
            return ImageManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ManifestMalformedError) as e:
            logger.warning("Ignoring unreadable image manifest %s: %s", path, e)
            return None

    def load_bundled_manifest(self) -> Optional[ImageManifest]:
        return self._read_manifest(self.bundled_manifest_path)

    def load_local_manifest(self) -> Optional[ImageManifest]:
        return self._read_manifest(self.manifest_path)

    def _save_local_manifest(self, manifest: ImageManifest) -> None:
        self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self.manifest_path.parent, prefix=f".{self.manifest_path.name}."
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(manifest.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp, self.manifest_path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def local_hashes(self) -> dict[str, str]:
        """Bundled hashes overlaid with those synced since install."""
        hashes: dict[str, str] = {}
        for manifest in (self.load_bundled_manifest(), self.load_local_manifest()):
            if manifest:
                hashes.update({cid: info.hash for cid, info in manifest.images.items()})
        return hashes

    @staticmethod
    def compute_to_sync(
        remote: ImageManifest, local_hashes: dict[str, str]
    ) -> list[tuple[str, ImageInfo]]:
        """Remote entries missing locally or with a different hash, ordered by id."""
        return sorted(
            (
                (cid, info)
                for cid, info in remote.images.items()
                if local_hashes.get(cid) != info.hash
            ),
            key=lambda item: item[0],
        )

    def _fetch_remote_manifest(self) -> ImageManifest:
        try:
            return self.http.image_manifest()
        except SyncError as e:
            raise ManifestFetchError(
                f"Failed to fetch image manifest: {e}", e.kind, e
            ) from e

    def _checkpoint(self, remote: ImageManifest, synced: dict[str, ImageInfo]) -> None:
        """Merge ``synced`` into the local manifest file (read-modify-write)."""
        if not synced:
            return
        with self._manifest_lock:
            existing = self.load_local_manifest() or ImageManifest()
            images = {**existing.images, **synced}
            self._save_local_manifest(
                ImageManifest(
                    version=remote.version,
                    generated=remote.generated,
                    image_count=len(images),
                    images=images,
                )
            )
        logger.info("Saved local manifest: %d images", len(images))

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync_status(self) -> tuple[int, int]:
        """Returns (images needing sync, images on the server) without downloading."""
        remote = self._fetch_remote_manifest()
        return len(self.compute_to_sync(remote, self.local_hashes())), remote.image_count

    def sync_images(
        self, progress: Optional[Callable[[int, int], None]] = None
    ) -> ImageSyncResult:
        """
        Download every image whose hash changed.

        A failed image is logged and skipped. ``progress(downloaded, total)``
        is called after each successful download.
        """
        progress = progress or _ignore_progress
        with self._run_lock:
            self._cancel.clear()
            remote = self._fetch_remote_manifest()
            local = self.local_hashes()
            to_sync = self.compute_to_sync(remote, local)
            logger.info(
                "Image sync: server %d, local %d, to sync %d",
                remote.image_count,
                len(local),
                len(to_sync),
            )

            result = ImageSyncResult(total=len(to_sync))
            pending: dict[str, ImageInfo] = {}
            for card_id, info in to_sync:
                if self._cancel.is_set():
                    result.cancelled = True
                    break
                try:
                    self._write_image(card_id, self.http.download_image(info.path))
                except (SyncError, OSError, ValueError) as e:
                    logger.warning("Failed to download image %s: %s", card_id, e)
                    result.failed.append(card_id)
                    continue

                pending[card_id] = info
                result.downloaded += 1
                progress(result.downloaded, result.total)
                if len(pending) >= self.checkpoint_every:
                    self._checkpoint(remote, pending)
                    pending = {}

            self._checkpoint(remote, pending)

        logger.info(
            "Image sync complete. Downloaded: %d/%d", result.downloaded, result.total
        )
        return result

    def verify_image_hash(self, card_id: str, path: Optional[str | Path] = None) -> bool:
        """Recompute the SHA-256 of an image file and compare it with the manifest."""
        expected = self.local_hashes().get(card_id)
        if expected is None:
            return False
        try:
            data = Path(path).read_bytes() if path else self.image_path(card_id).read_bytes()
        except (OSError, ValueError):
            return False
        return hashlib.sha256(data).hexdigest() == (_sha256_hex(expected) or expected.lower())
