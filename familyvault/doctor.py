"""
Structural and security checks for a local blob store.

Covers:
- Permission checks (700 for directories, 600 for files)
- Symlink refusal
- Index vs blob consistency (missing and orphaned blobs)
- Envelope sanity: decodable, 12-byte nonce, 16-byte tag, no nonce reuse
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .crypto import NONCE_SIZE, TAG_SIZE
from .envelope import Envelope
from .errors import DecryptionFailed
from .models import ItemIndex
from .storage import BLOB_SUFFIX, INDEX_NAME


class Severity(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class CheckResult:
    id: str
    severity: Severity
    message: str
    path: Optional[Path] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "message": self.message,
            "path": str(self.path) if self.path else None,
            "details": self.details or None,
        }


def _mode_bits(path: Path) -> int:
    """Return the permission bits for a path without following symlinks."""
    return stat.S_IMODE(os.lstat(path).st_mode)


def _is_symlink(path: Path) -> bool:
    return stat.S_ISLNK(os.lstat(path).st_mode)


def _expect_mode(path: Path, expected: int, kind: str) -> Optional[CheckResult]:
    if os.name != "posix":
        return None
    actual = _mode_bits(path)
    if actual != expected:
        return CheckResult(
            id="permission_mismatch",
            severity=Severity.ERROR,
            message=f"{kind} permissions {oct(actual)} != expected {oct(expected)}",
            path=path,
            details={"expected": oct(expected), "actual": oct(actual)},
        )
    return None


class StoreDoctor:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._seen_nonces: Dict[bytes, Path] = {}

    def run(self) -> List[CheckResult]:
        self._seen_nonces = {}
        results = self._check_root()
        if any(r.severity == Severity.ERROR and r.id in ("store_missing", "store_is_symlink") for r in results):
            return results

        for vault_dir in sorted(self.root.iterdir()):
            if _is_symlink(vault_dir):
                results.append(CheckResult("vault_dir_symlink", Severity.ERROR, "Vault directory is a symlink.", vault_dir))
                continue
            if not vault_dir.is_dir():
                results.append(CheckResult("stray_file", Severity.WARNING, "Unexpected file in store root.", vault_dir))
                continue
            results.extend(self._check_vault_dir(vault_dir))

        if not any(r.severity != Severity.OK for r in results):
            results.append(CheckResult("summary_all_good", Severity.OK, "Store passed all checks.", self.root))
        return results

    def _check_root(self) -> List[CheckResult]:
        p = self.root
        if not p.exists() and not p.is_symlink():
            return [CheckResult("store_missing", Severity.ERROR, "Store root does not exist.", p)]
        if _is_symlink(p):
            return [CheckResult("store_is_symlink", Severity.ERROR, "Store root is a symlink. This is not allowed.", p)]
        results = []
        bad_mode = _expect_mode(p, 0o700, "Directory")
        if bad_mode:
            results.append(bad_mode)
        return results

    def _check_vault_dir(self, vault_dir: Path) -> List[CheckResult]:
        results: List[CheckResult] = []
        bad_mode = _expect_mode(vault_dir, 0o700, "Directory")
        if bad_mode:
            results.append(bad_mode)

        index_path = vault_dir / INDEX_NAME
        blobs = {p.name[: -len(BLOB_SUFFIX)]: p for p in vault_dir.glob(f"*{BLOB_SUFFIX}")}
        indexed: set = set()
        if index_path.is_symlink():
            results.append(CheckResult("index_symlink", Severity.ERROR, "metadata.json is a symlink.", index_path))
        elif not index_path.exists():
            results.append(CheckResult("index_missing", Severity.ERROR, "metadata.json missing.", index_path))
        else:
            try:
                idx = ItemIndex.model_validate_json(index_path.read_bytes())
                indexed = {str(item.id) for item in idx.items}
            except ValidationError as exc:
                results.append(CheckResult("index_unreadable", Severity.ERROR, f"metadata.json does not parse: {exc.error_count()} errors", index_path))
            bad_mode = _expect_mode(index_path, 0o600, "File")
            if bad_mode:
                results.append(bad_mode)

        for item_id in sorted(indexed - blobs.keys()):
            results.append(CheckResult("blob_missing", Severity.ERROR, f"Indexed item {item_id} has no blob.", vault_dir / f"{item_id}{BLOB_SUFFIX}"))
        for item_id in sorted(blobs.keys() - indexed):
            results.append(CheckResult("blob_orphaned", Severity.WARNING, f"Blob {item_id} is not in the index.", blobs[item_id]))

        for path in sorted(blobs.values()):
            results.extend(self._check_blob(path))
        return results

    def _check_blob(self, path: Path) -> List[CheckResult]:
        if _is_symlink(path):
            return [CheckResult("blob_symlink", Severity.ERROR, "Blob file is a symlink.", path)]
        results = []
        bad_mode = _expect_mode(path, 0o600, "File")
        if bad_mode:
            results.append(bad_mode)
        try:
            envelope = Envelope.from_bytes(path.read_bytes())
        except DecryptionFailed:
            results.append(CheckResult("envelope_malformed", Severity.ERROR, "Blob is not a valid envelope.", path))
            return results
        if len(envelope.nonce) != NONCE_SIZE:
            results.append(CheckResult(
                "nonce_length", Severity.ERROR, f"Nonce length {len(envelope.nonce)} != {NONCE_SIZE}", path,
            ))
        if len(envelope.tag) != TAG_SIZE:
            results.append(CheckResult(
                "tag_length", Severity.ERROR, f"Tag length {len(envelope.tag)} != {TAG_SIZE}", path,
            ))
        previous = self._seen_nonces.get(envelope.nonce)
        if previous is not None:
            results.append(CheckResult(
                "nonce_reuse", Severity.ERROR, "Nonce reused across envelopes.", path,
                details={"first_seen": str(previous)},
            ))
        else:
            self._seen_nonces[envelope.nonce] = path
        return results
