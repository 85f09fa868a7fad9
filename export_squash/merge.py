# -*- coding: utf-8 -*-

"""
Whiteout aware merging of unpacked layer trees.

Layers are applied one after another, oldest first, onto a target
directory. Docker marker files (the ``.wh.`` prefix) found in a layer
remove the corresponding paths from the target instead of being copied.

https://github.com/opencontainers/image-spec/blob/master/layer.md#whiteouts
"""

import hashlib
import os
import shutil
import stat
from typing import AbstractSet, List, Set, Tuple

from export_squash.lib.common import normalize_path

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"
# Prefix of aufs metadata entries (.wh..wh.plnk, .wh..wh.aufs), never part of a layer
INTERNAL_PREFIX = ".wh..wh."


def is_whiteout(name: str) -> bool:
    return os.path.basename(name).startswith(WHITEOUT_PREFIX)


def is_opaque(name: str) -> bool:
    return os.path.basename(name) == OPAQUE_MARKER


def whiteout_name(name: str) -> str:
    return WHITEOUT_PREFIX + name


def whiteout_target(name: str) -> str:
    """Name of the file hidden by the whiteout marker"""
    return os.path.basename(name)[len(WHITEOUT_PREFIX) :]


def tree_paths(directory: str) -> Set[str]:
    """
    Returns all paths found in the directory tree, normalized to
    the '/opt/file' form. Marker files are not included.
    """
    paths = set()

    for root, dirs, files in os.walk(directory):
        rel = os.path.relpath(root, directory)

        for name in dirs + files:
            if is_whiteout(name):
                continue

            paths.add(normalize_path(os.path.join(rel, name)))

    return paths


def tree_digest(directory: str) -> str:
    """
    Computes a sha256 digest of the directory tree: paths, types,
    permissions, ownership, link targets and file content. Timestamps
    are not part of the digest.
    """
    sha = hashlib.sha256()
    entries = []

    for root, dirs, files in os.walk(directory):
        for name in dirs + files:
            entries.append(
                os.path.relpath(os.path.join(root, name), directory)
            )

    for rel in sorted(entries):
        path = os.path.join(directory, rel)
        st = os.lstat(path)

        sha.update(
            (
                "%s\0%o\0%d\0%d\0" % (rel, st.st_mode, st.st_uid, st.st_gid)
            ).encode("utf-8", "surrogateescape")
        )

        if stat.S_ISLNK(st.st_mode):
            sha.update(os.readlink(path).encode("utf-8", "surrogateescape"))
        elif stat.S_ISREG(st.st_mode):
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(1048576), b""):
                    sha.update(chunk)
        elif stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode):
            sha.update(b"%d:%d" % (os.major(st.st_rdev), os.minor(st.st_rdev)))

        sha.update(b"\0")

    return sha.hexdigest()


def _is_dir(path: str) -> bool:
    return os.path.isdir(path) and not os.path.islink(path)


def _remove(path: str):
    if _is_dir(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.unlink(path)


def _clear_directory(directory: str):
    if not _is_dir(directory):
        return

    for name in os.listdir(directory):
        _remove(os.path.join(directory, name))


def _has_content_below(directory: str, paths: AbstractSet[str]) -> bool:
    prefix = directory if directory.endswith("/") else directory + "/"

    for path in paths:
        if path.startswith(prefix):
            return True

    return False


def _copy_metadata(src: str, dst: str):
    st = os.lstat(src)

    # Changing the owner clears the setuid bits, it has to go first
    if os.geteuid() == 0:
        os.lchown(dst, st.st_uid, st.st_gid)

    shutil.copystat(src, dst, follow_symlinks=False)


def overlay(source: str, target: str, lower_paths: AbstractSet[str] = frozenset(), log=None):
    """
    Applies the unpacked layer in the source directory onto the target
    directory.

    Files are moved out of the source tree, so the source directory is
    not usable afterwards.

    Marker files are consumed. The only exception are markers hiding
    a path which exists in ``lower_paths`` - the layers below the merged
    ones, which stay in the image. Such a marker is kept in the target,
    otherwise the hidden file would show up again.
    """
    directories: List[Tuple[str, str]] = []

    for root, dirs, files in os.walk(source):
        dirs.sort()

        rel = os.path.relpath(root, source)
        target_root = os.path.normpath(os.path.join(target, rel))
        names = sorted(dirs + files)

        if OPAQUE_MARKER in names:
            opaque_dir = normalize_path(rel)

            if log:
                log.debug("Found opaque directory: '%s'" % opaque_dir)

            _clear_directory(target_root)

            if _has_content_below(opaque_dir, lower_paths):
                os.rename(
                    os.path.join(root, OPAQUE_MARKER),
                    os.path.join(target_root, OPAQUE_MARKER),
                )

        for name in names:
            if not is_whiteout(name) or name.startswith(INTERNAL_PREFIX):
                continue

            hidden = whiteout_target(name)
            hidden_path = normalize_path(os.path.join(rel, hidden))

            if log:
                log.debug("Removing '%s' hidden by marker file" % hidden_path)

            _remove(os.path.join(target_root, hidden))

            if hidden_path in lower_paths:
                os.replace(
                    os.path.join(root, name), os.path.join(target_root, name)
                )

        for name in names:
            if is_whiteout(name):
                continue

            src = os.path.join(root, name)
            dst = os.path.join(target_root, name)

            # The path is back, a marker kept for it is not valid anymore
            marker = os.path.join(target_root, whiteout_name(name))
            hides_lower = False
            if os.path.lexists(marker):
                os.unlink(marker)
                hides_lower = _has_content_below(
                    normalize_path(os.path.join(rel, name)), lower_paths
                )

            if _is_dir(src):
                if os.path.lexists(dst) and not _is_dir(dst):
                    os.unlink(dst)

                if not os.path.lexists(dst):
                    os.mkdir(dst)

                # Recreated directory, the removed lower content stays hidden
                if hides_lower:
                    open(os.path.join(dst, OPAQUE_MARKER), "w").close()

                directories.append((src, dst))
            else:
                _remove(dst)
                os.rename(src, dst)

        # Marker directories and moved symlinks are not walked
        dirs[:] = [
            d for d in dirs if not is_whiteout(d) and _is_dir(os.path.join(root, d))
        ]

    # Directory metadata is applied last, adding files modifies timestamps
    for src, dst in reversed(directories):
        _copy_metadata(src, dst)
