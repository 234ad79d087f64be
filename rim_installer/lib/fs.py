from __future__ import annotations

import logging
import shutil
import stat
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import List, Optional, Union

from .env import IS_WINDOWS

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Longest suffix first, so that `.tar.gz` wins over `.gz`.
ARCHIVE_SUFFIXES = (".tar.gz", ".tar.xz", ".tar.bz2", ".tgz", ".zip")


def ensure_dir(path: PathLike) -> Path:
    p = Path(path)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"unable to create directory '{p}': {e}") from e
    return p


def read_to_string(what: str, path: PathLike) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise OSError(f"failed to read {what} file '{path}': {e}") from e


def write_file(path: PathLike, content: str, *, append: bool = False) -> None:
    p = Path(path)
    ensure_dir(p.parent)
    with p.open("a" if append else "w", encoding="utf-8") as f:
        f.write(content)
        if not content.endswith("\n"):
            f.write("\n")


def to_normalized_abspath(path: PathLike, root: Optional[PathLike] = None) -> Path:
    """Join `path` onto `root` (or cwd) and drop `.`/`..` components lexically.

    Symlinks are not resolved, `..` simply pops the previous component.
    """

    p = Path(path)
    if not p.is_absolute():
        p = Path(root if root is not None else Path.cwd()) / p

    parts: List[str] = []
    for part in p.parts[1:]:
        if part == ".":
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return Path(p.parts[0]).joinpath(*parts)


def is_root_dir(path: PathLike) -> bool:
    p = Path(path)
    return p.is_absolute() and p.parent == p


def is_executable(path: PathLike) -> bool:
    """A file that looks like a program: `.exe` on Windows, no extension elsewhere."""

    p = Path(path)
    if not p.is_file():
        return False
    if IS_WINDOWS:
        return p.suffix.lower() == ".exe"
    return p.suffix == ""


def set_exec_permission(path: PathLike) -> None:
    if IS_WINDOWS:
        return
    p = Path(path)
    mode = p.stat().st_mode
    p.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def walk_dir(path: PathLike, *, recursive: bool = False) -> List[Path]:
    d = Path(path)
    if recursive:
        return sorted(d.rglob("*"))
    return sorted(d.iterdir())


def copy_tree(src: PathLike, dst: PathLike) -> None:
    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(src)

    d.mkdir(parents=True, exist_ok=True)
    for item in s.rglob("*"):
        rel = item.relative_to(s)
        out = d / rel
        if item.is_dir():
            out.mkdir(parents=True, exist_ok=True)
        else:
            out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, out)


def copy_to(src: PathLike, to_dir: PathLike, *, overwrite: bool = False) -> Path:
    """Copy a file or directory *into* an existing directory, returning the new path."""

    s = Path(src)
    d = Path(to_dir)
    if not s.exists():
        raise FileNotFoundError(f"failed to copy '{s}': path does not exist")
    if not d.is_dir():
        raise NotADirectoryError(f"'{d}' is not a directory")

    dest = d / s.name
    if dest.exists() and not overwrite:
        raise FileExistsError(f"unable to copy '{s}': '{dest}' already exists")

    if s.is_file():
        shutil.copy2(s, dest)
    else:
        copy_tree(s, dest)
    logger.debug("Copied %s -> %s", s, dest)
    return dest


def copy_file_to(src: PathLike, to_dir: PathLike, *, overwrite: bool = False) -> Path:
    if not Path(src).is_file():
        raise ValueError(f"'{src}' is not a file, use copy_to for directories")
    return copy_to(src, to_dir, overwrite=overwrite)


def remove_path(path: PathLike) -> None:
    p = Path(path)
    if p.is_dir() and not p.is_symlink():
        shutil.rmtree(p)
    elif p.exists() or p.is_symlink():
        p.unlink()


def move_to(src: PathLike, dest: PathLike, *, force: bool = False) -> None:
    """Move `src` to `dest` (the final path, not its parent).

    With `force`, an existing `dest` is removed first.
    """

    s = Path(src)
    d = Path(dest)
    if d.exists():
        if not force:
            raise FileExistsError(f"failed when moving '{s}' to '{d}': destination exists")
        remove_path(d)
    ensure_dir(d.parent)
    try:
        shutil.move(str(s), str(d))
    except OSError as e:
        raise OSError(f"failed when moving '{s}' to '{d}': {e}") from e


def make_temp_dir(prefix: str, root: Optional[PathLike] = None) -> tempfile.TemporaryDirectory:
    if root is not None:
        ensure_dir(root)
    return tempfile.TemporaryDirectory(prefix=f"{prefix}_", dir=str(root) if root else None)


def archive_suffix(path: PathLike) -> Optional[str]:
    name = Path(path).name.lower()
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return suffix
    return None


def _check_member(dest: Path, name: str) -> None:
    target = to_normalized_abspath(name, dest)
    if dest != target and dest not in target.parents:
        raise ValueError(f"archive member '{name}' escapes extraction dir '{dest}'")


def extract_archive(archive: PathLike, dest: PathLike) -> Path:
    """Extract a zip/tar archive into `dest`.

    If the archive holds exactly one top-level directory, that directory is returned
    instead of `dest`, so callers see the tool's own layout.
    """

    a = Path(archive)
    d = to_normalized_abspath(ensure_dir(dest))
    suffix = archive_suffix(a)
    logger.info("Extracting %s -> %s", a, d)

    if suffix == ".zip":
        with zipfile.ZipFile(a) as zf:
            for name in zf.namelist():
                _check_member(d, name)
            zf.extractall(d)
            # zip does not keep unix permissions via extractall
            for info in zf.infolist():
                perm = (info.external_attr >> 16) & 0o777
                if perm and not info.is_dir():
                    (d / info.filename).chmod(perm)
    elif suffix is not None:
        mode = {".tar.gz": "r:gz", ".tgz": "r:gz", ".tar.xz": "r:xz", ".tar.bz2": "r:bz2"}[suffix]
        with tarfile.open(a, mode) as tf:
            for member in tf.getmembers():
                _check_member(d, member.name)
            tf.extractall(d)
    else:
        raise ValueError(f"'{a}' is not a supported archive")

    entries = list(d.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return d
