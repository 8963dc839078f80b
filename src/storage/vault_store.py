"""
Vault Store

Encrypted at-rest persistence of the current vault.

File format:
    b"PVLT" | format version (1 byte) | nonce (12 bytes) | AES-256-GCM ciphertext + tag

The header is bound as associated data, so any change to any byte of the file
fails authentication. Every write uses a fresh random nonce and lands through
a temp file + os.replace, so a crash never leaves a partial vault behind.

Key material lives in memory only while a VaultHandle is open; the buffer is
zeroed when the handle closes.
"""

import json
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger
from pydantic import BaseModel, ValidationError

from ..core.config import Config, VaultPaths
from ..core.error_codes import VaultCorruptError, VaultLockedError
from ..dna.models import Vault
from .locking import VaultLock

MAGIC = b"PVLT"
FILE_FORMAT_VERSION = 1
HEADER = MAGIC + bytes([FILE_FORMAT_VERSION])
NONCE_SIZE = 12
KEY_SIZE = 32
SALT_SIZE = 16
KEY_CHECK_PLAINTEXT = b"pattern-vault-key-check"


def atomic_write(path: Union[str, Path], data: bytes, mode: int = 0o600) -> None:
    """Write bytes to a temp file in the same directory, fsync, then replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, temp_name = tempfile.mkstemp(prefix=f".tmp_{path.name}_", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def secure_delete(path: Union[str, Path]) -> None:
    """Overwrite a file with random bytes before unlinking it."""
    path = Path(path)
    if not path.exists():
        return
    size = path.stat().st_size
    with open(path, "r+b") as f:
        f.write(os.urandom(size))
        f.flush()
        os.fsync(f.fileno())
    path.unlink()


class VaultCipher:
    """AES-256-GCM sealing with a key that can be wiped."""

    def __init__(self, key: bytearray):
        if len(key) != KEY_SIZE:
            raise VaultLockedError("Vault key has the wrong length")
        self._key = key

    def seal(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return HEADER + nonce + AESGCM(bytes(self._key)).encrypt(nonce, plaintext, HEADER)

    def unseal(self, blob: bytes) -> bytes:
        if len(blob) < len(HEADER) + NONCE_SIZE + 16 or not blob.startswith(MAGIC):
            raise VaultCorruptError("Encrypted file is truncated or not a vault file")
        if blob[: len(HEADER)] != HEADER:
            raise VaultCorruptError(f"Unsupported vault file version: {blob[len(MAGIC)]}")
        nonce = blob[len(HEADER): len(HEADER) + NONCE_SIZE]
        try:
            return AESGCM(bytes(self._key)).decrypt(nonce, blob[len(HEADER) + NONCE_SIZE:], HEADER)
        except InvalidTag:
            raise VaultCorruptError("Authenticated decryption failed")

    def wipe(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0


class VaultMeta(BaseModel):
    """Plaintext, content-free metadata kept beside the vault."""

    last_export_at: Optional[datetime] = None
    export_count: int = 0


def _load_meta(meta_file: Path) -> VaultMeta:
    if not meta_file.exists():
        return VaultMeta()
    try:
        return VaultMeta.model_validate_json(meta_file.read_bytes())
    except ValidationError:
        logger.warning("Vault metadata unreadable, starting fresh")
        return VaultMeta()


class VaultStore:
    """
    Owns the on-disk vault, its key material and its lock.

    Usage:
        store = VaultStore(VaultPaths.from_root("~/.pattern-vault"))
        with store.open() as handle:
            vault = handle.read()
            handle.write(vault)
    """

    def __init__(
        self,
        paths: VaultPaths,
        passphrase: Optional[str] = None,
        lock_timeout: float = Config.LOCK_TIMEOUT_SECONDS,
        poll_interval: float = Config.LOCK_POLL_INTERVAL,
        kdf_iterations: int = Config.KDF_ITERATIONS,
        create_key: bool = True,
        owner_identity: str = Config.OWNER_IDENTITY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.paths = paths
        self._passphrase = passphrase
        self._lock_timeout = lock_timeout
        self._poll_interval = poll_interval
        self._kdf_iterations = kdf_iterations
        self._create_key = create_key
        self.owner_identity = owner_identity
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def open(self) -> "VaultHandle":
        return VaultHandle(self)

    def exists(self) -> bool:
        return self.paths.vault_file.exists()

    def has_encrypted_state(self) -> bool:
        """True if anything on disk was sealed with the vault key."""
        if self.exists():
            return True
        snapshots_dir = self.paths.snapshots_dir
        return snapshots_dir.exists() and any(snapshots_dir.glob("*.snap.enc"))

    def read_meta(self) -> VaultMeta:
        """Read the plaintext metadata under the lock, without key material."""
        with self.new_lock():
            return _load_meta(self.paths.meta_file)

    def now(self) -> datetime:
        return self._clock()

    def new_lock(self) -> VaultLock:
        return VaultLock(
            self.paths.lock_file,
            timeout=self._lock_timeout,
            poll_interval=self._poll_interval,
        )

    def _load_key(self) -> bytearray:
        """Load the master key, derive it from the passphrase, or create it."""
        try:
            if self._passphrase:
                return self._derive_key()
            return self._load_or_create_key_file()
        except OSError as e:
            raise VaultLockedError(f"Key material unavailable: {e}")

    def _load_or_create_key_file(self) -> bytearray:
        key_path = self.paths.master_key
        if key_path.exists():
            key = bytearray(key_path.read_bytes())
            if len(key) != KEY_SIZE:
                raise VaultLockedError("Master key file is damaged")
            return key

        if not self._create_key:
            raise VaultLockedError(f"No key material at {key_path}")
        if self.has_encrypted_state():
            raise VaultLockedError(f"Master key missing for existing vault data at {key_path}")

        key = bytearray(os.urandom(KEY_SIZE))
        self.paths.keys_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        # User-only read/write
        with open(key_path, "wb", opener=lambda p, f: os.open(p, f | os.O_EXCL, mode=0o600)) as f:
            f.write(bytes(key))
        logger.info("Vault encryption key generated", key_path=str(key_path))
        return key

    def _derive_key(self) -> bytearray:
        salt_path = self.paths.kdf_salt
        check_path = self.paths.keys_dir / "key.check"

        if salt_path.exists():
            salt = salt_path.read_bytes()
        elif self._create_key and not self.has_encrypted_state():
            salt = os.urandom(SALT_SIZE)
            atomic_write(salt_path, salt)
        else:
            raise VaultLockedError(f"No key derivation salt at {salt_path}")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        key = bytearray(kdf.derive(self._passphrase.encode()))
        cipher = VaultCipher(key)

        if check_path.exists():
            try:
                cipher.unseal(check_path.read_bytes())
            except VaultCorruptError:
                cipher.wipe()
                raise VaultLockedError("Passphrase does not unlock this vault")
        else:
            atomic_write(check_path, cipher.seal(KEY_CHECK_PLAINTEXT))
        return key


class VaultHandle:
    """
    Scoped access to the vault: holds the lock and the key while open.

    The lock is released and the key zeroed on every exit path.
    """

    def __init__(self, store: VaultStore):
        self._store = store
        self._lock = store.new_lock()
        self._cipher: Optional[VaultCipher] = None
        self._erased = False

    @property
    def paths(self) -> VaultPaths:
        return self._store.paths

    @property
    def is_open(self) -> bool:
        return self._cipher is not None

    def __enter__(self):
        self._lock.acquire()
        try:
            self._cipher = VaultCipher(self._store._load_key())
        except BaseException:
            self._lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if self._cipher is not None:
                self._cipher.wipe()
        finally:
            self._cipher = None
            self._lock.release()
        return False

    def _require_open(self) -> VaultCipher:
        if self._cipher is None or self._erased:
            raise RuntimeError("VaultHandle is not open")
        return self._cipher

    def seal(self, plaintext: bytes) -> bytes:
        return self._require_open().seal(plaintext)

    def unseal(self, blob: bytes) -> bytes:
        return self._require_open().unseal(blob)

    def read(self) -> Vault:
        """Decrypt and validate the current vault; empty if none exists yet."""
        cipher = self._require_open()
        vault_file = self.paths.vault_file
        if not vault_file.exists():
            return Vault.empty(identity=self._store.owner_identity, now=self._store.now())

        plaintext = cipher.unseal(vault_file.read_bytes())
        try:
            return Vault.model_validate_json(plaintext)
        except ValidationError as e:
            raise VaultCorruptError(f"Vault content is invalid: {e.error_count()} errors")

    def write(self, vault: Vault) -> None:
        """Encrypt with a fresh nonce and atomically replace the vault file."""
        cipher = self._require_open()
        blob = cipher.seal(vault.model_dump_json().encode("utf-8"))
        atomic_write(self.paths.vault_file, blob)
        self._write_manifest(vault)
        logger.info("Vault written", size_bytes=len(blob), **vault.counts())

    def _write_manifest(self, vault: Vault) -> None:
        manifest = {
            "@context": Config.PDX_CONTEXT,
            "@type": Config.PDX_TYPE,
            "version": Config.PDX_VERSION,
            "last_modified": vault.last_modified_at.isoformat(),
            **vault.counts(),
        }
        atomic_write(
            self.paths.manifest_file,
            json.dumps(manifest, indent=2).encode("utf-8"),
            mode=0o644,
        )

    def read_meta(self) -> VaultMeta:
        self._require_open()
        return _load_meta(self.paths.meta_file)

    def write_meta(self, meta: VaultMeta) -> None:
        self._require_open()
        atomic_write(self.paths.meta_file, meta.model_dump_json().encode("utf-8"))

    def erase_all(self) -> None:
        """
        Irrecoverably delete the vault, its snapshots and all key material.

        The audit log is kept. The handle is unusable afterwards.
        """
        self._require_open()
        paths = self.paths

        for key_file in (paths.master_key, paths.signing_key, paths.kdf_salt, paths.keys_dir / "key.check"):
            secure_delete(key_file)
        secure_delete(paths.vault_file)

        if paths.snapshots_dir.exists():
            shutil.rmtree(paths.snapshots_dir)
        if paths.keys_dir.exists():
            shutil.rmtree(paths.keys_dir)
        for plain_file in (paths.manifest_file, paths.meta_file):
            if plain_file.exists():
                plain_file.unlink()

        self._cipher.wipe()
        self._erased = True
        logger.info("Vault erased", root=str(paths.root))
