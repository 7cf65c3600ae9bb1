"""
Orphan export written before any deletion, so removed documents can be
inspected or re-inserted by hand.

Exports are BSON-aware JSON (ObjectId and dates survive the round trip) with a
plain-text manifest next to them. Optional AES-256-GCM encryption uses a key
derived from a passphrase.
"""

import hashlib
import json
import os
import re
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from bson import json_util
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import EXPORT_DIR, EXPORT_ENCRYPT, get_export_password
from .errors import ExportError
from .schema import Record, Reference
from ..util.logging import audit_event

EXPORT_HEADER = b'DOCSWEEP_EXPORT_V1\n'


@dataclass
class ExportManifest:
    """Describes one orphan export file."""
    export_id: str
    created_at: datetime
    source: str
    field: str
    target: str
    record_count: int
    path: str
    encrypted: bool = False
    checksum: str = ""
    salt: Optional[str] = None  # PBKDF2 salt for key derivation

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExportManifest':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        return cls(**data)


def _derive_key(password: str, salt: bytes) -> bytes:
    """Derive encryption key from password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100000,
    )
    return kdf.derive(password.encode())


def _encrypt_data(data: bytes, key: bytes) -> bytes:
    """Encrypt data using AES-256-GCM. Output is nonce + tag + ciphertext."""
    nonce = os.urandom(12)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return nonce + encryptor.tag + ciphertext


def _decrypt_data(encrypted_data: bytes, key: bytes) -> bytes:
    """Decrypt data using AES-256-GCM."""
    if len(encrypted_data) < 28:  # nonce (12) + tag (16)
        raise ExportError("Encrypted export too short")

    nonce = encrypted_data[:12]
    tag = encrypted_data[12:28]
    ciphertext = encrypted_data[28:]

    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    try:
        return decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag as e:
        raise ExportError("Export decryption failed: wrong password or corrupted data") from e


def _calculate_checksum(data: bytes) -> str:
    """Calculate SHA-256 checksum of data."""
    return hashlib.sha256(data).hexdigest()


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value)


def export_orphans(
    store,
    reference: Reference,
    orphans: List[Record],
    export_dir: Optional[str] = None,
    encrypt: Optional[bool] = None,
    password: Optional[str] = None,
) -> ExportManifest:
    """
    Write the full documents of classified orphans to disk.

    Args:
        store: Document store handle
        reference: Reference the orphans were classified against
        orphans: Records to export (fetched again by identity)
        export_dir: Base directory, defaults to SWEEP_EXPORT_DIR
        encrypt: Encrypt the export, defaults to SWEEP_EXPORT_ENCRYPT
        password: Passphrase, defaults to SWEEP_EXPORT_PASSWORD

    Returns:
        ExportManifest: Manifest of the written export

    Raises:
        ExportError: If the export cannot be written
    """
    encrypt = EXPORT_ENCRYPT if encrypt is None else encrypt
    password = password or get_export_password()
    if encrypt and not password:
        raise ExportError("Encrypted export requested but no SWEEP_EXPORT_PASSWORD set")

    documents = store.find_by_ids(reference.source, reference.id_field, [record.id for record in orphans])
    payload = json_util.dumps(documents, indent=2).encode('utf-8')
    checksum = _calculate_checksum(payload)

    created_at = datetime.now()
    base_dir = Path(export_dir or EXPORT_DIR) / f"orphaned-{_safe_name(reference.source)}-{created_at.strftime('%Y-%m-%d')}"
    suffix = ".json.enc" if encrypt else ".json"
    export_file = base_dir / f"{_safe_name(reference.source)}-{_safe_name(reference.field)}-{created_at.strftime('%H%M%S')}{suffix}"
    manifest_file = export_file.with_name(export_file.name + ".manifest.json")

    salt = None
    body = payload
    if encrypt:
        salt_bytes = secrets.token_bytes(16)
        salt = salt_bytes.hex()
        body = _encrypt_data(payload, _derive_key(password, salt_bytes))

    manifest = ExportManifest(
        export_id=f"export_{created_at.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(4)}",
        created_at=created_at,
        source=reference.source,
        field=reference.field,
        target=reference.target,
        record_count=len(documents),
        path=str(export_file),
        encrypted=encrypt,
        checksum=checksum,
        salt=salt,
    )

    try:
        base_dir.mkdir(parents=True, exist_ok=True)
        with open(export_file, 'wb') as f:
            f.write(EXPORT_HEADER)
            f.write(body)
        with open(manifest_file, 'w') as f:
            json.dump(manifest.to_dict(), f, indent=2)
    except OSError as e:
        # Clean up partial export on failure
        export_file.unlink(missing_ok=True)
        manifest_file.unlink(missing_ok=True)
        raise ExportError(f"Export of orphans from '{reference.source}' failed: {e}") from e

    audit_event(
        event_type="orphans_exported",
        identifiers={"export_id": manifest.export_id, "source": reference.source, "field": reference.field},
        payload={"record_count": manifest.record_count, "encrypted": encrypt, "path": manifest.path},
    )

    return manifest


def read_export(export_path: str, password: Optional[str] = None) -> List[Dict[str, Any]]:
    """Load an export back, decrypting and verifying its checksum against the manifest."""
    export_file = Path(export_path)
    manifest_file = export_file.with_name(export_file.name + ".manifest.json")

    try:
        with open(manifest_file, 'r') as f:
            manifest = ExportManifest.from_dict(json.load(f))
        with open(export_file, 'rb') as f:
            content = f.read()
    except FileNotFoundError as e:
        raise ExportError(f"Export file not found: {e}") from e

    if not content.startswith(EXPORT_HEADER):
        raise ExportError("Invalid export file format")
    body = content[len(EXPORT_HEADER):]

    if manifest.encrypted:
        password = password or get_export_password()
        if not password or not manifest.salt:
            raise ExportError("Encrypted export requires a password and a salt")
        body = _decrypt_data(body, _derive_key(password, bytes.fromhex(manifest.salt)))

    actual_checksum = _calculate_checksum(body)
    if actual_checksum != manifest.checksum:
        raise ExportError(f"Export checksum mismatch: expected {manifest.checksum}, got {actual_checksum}")

    return json_util.loads(body.decode('utf-8'))
