"""Owner-only file primitives shared by the file-backed stores."""

import os, pathlib, stat, tempfile

NOFOLLOW_FLAG = getattr(os, "O_NOFOLLOW", 0)


def ensure_not_symlink(path: pathlib.Path, label: str):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise RuntimeError(f"{label} {path} is a symlink, which is not allowed")


def ensure_regular_file(path: pathlib.Path, label: str):
    st = os.lstat(path)
    if not stat.S_ISREG(st.st_mode):
        raise RuntimeError(f"{label} {path} is not a regular file")
    if st.st_nlink > 1:
        raise RuntimeError(f"{label} {path} has unexpected hard links")


def secure_mkdir(path: pathlib.Path, label: str) -> pathlib.Path:
    """Create `path` (and parents) and clamp it to 0700."""
    ensure_not_symlink(path, label)
    path.mkdir(parents=True, exist_ok=True)
    ensure_not_symlink(path, label)
    if os.name == "posix":
        os.chmod(path, 0o700)
    return path


def safe_read_bytes(path: pathlib.Path) -> bytes:
    """Open without following symlinks and read while holding the descriptor."""
    ensure_regular_file(path, str(path))
    flags = os.O_RDONLY | NOFOLLOW_FLAG
    fd = os.open(path, flags)
    with os.fdopen(fd, "rb") as f:
        return f.read()


def _write_temp(directory: pathlib.Path, name: str, data: bytes) -> str:
    fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", dir=directory)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(tmp_path, 0o600)
    return tmp_path


def write_secure_file(path, data: bytes):
    """Atomically replace `path` with `data`, mode 0600 (owner read/write only)."""
    path = pathlib.Path(path)
    ensure_not_symlink(path.parent, "Parent directory")
    ensure_not_symlink(path, "Target file")
    tmp_path = _write_temp(path.parent, path.name, data)
    try:
        os.replace(tmp_path, path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
    ensure_regular_file(path, "Target file")


def create_secure_file(path, data: bytes) -> bool:
    """
    Write `data` to `path` only if nothing exists there yet.
    Returns False when another writer got there first.
    """
    path = pathlib.Path(path)
    ensure_not_symlink(path.parent, "Parent directory")
    tmp_path = _write_temp(path.parent, path.name, data)
    try:
        os.link(tmp_path, path)
        return True
    except FileExistsError:
        return False
    finally:
        os.unlink(tmp_path)
