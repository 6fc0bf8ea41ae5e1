#!/usr/bin/env python3
"""Weave several directory trees into one composite tree.

Sources are given in priority order.  For every relative path the first
source that provides it wins: regular files are hard linked into the
target, symlinks are recreated pointing at their fully resolved
destination, and directories present in several sources are merged
recursively.  Nothing is copied, so the sources and the target must
live on the same filesystem.

Usage:
    weave.py [-v] SOURCE [SOURCE ...] TARGET
    weave.py [-v] --manifest weave.yaml

Exit status is 1 for usage errors, 2 when the sources or target fail
validation, 0 otherwise.  Problems hit while weaving (type conflicts,
failed links, unreadable directories) are reported as warnings and do
not change the exit status.
"""

import argparse
import errno
import os
import stat
import sys

from _weave_manifest import ManifestError, load_manifest


def _warn(msg):
    print(f"warning: {msg}", file=sys.stderr)


def _note(msg):
    print(msg, file=sys.stderr)


def _reason(e):
    return e.strerror or str(e)


def _join(root, rel):
    """Join a composite-relative path onto a root; "" is the root itself."""
    return os.path.join(root, rel) if rel else root


def _display(rel):
    return rel or "."


def type_name(mode):
    """Human-readable entry type for an lstat mode."""
    if stat.S_ISREG(mode):
        return "file"
    if stat.S_ISDIR(mode):
        return "directory"
    if stat.S_ISLNK(mode):
        return "symlink"
    return "special"


def resolve_link(path):
    """Return the absolute, fully resolved destination of symlink *path*.

    Only the last component may be missing, so a link to a file that
    another layer provides (libfoo.so -> libfoo.so.1) still resolves.
    Raises OSError for a missing directory along the way or a loop.
    """
    destpath = os.path.realpath(path)
    if os.path.islink(destpath):
        raise OSError(errno.ELOOP, os.strerror(errno.ELOOP), path)
    parent = os.path.dirname(destpath)
    if not os.path.isdir(parent):
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), parent)
    return destpath


def _make_target_dir(target, path, reference, verbose):
    """Create target/path and clone the reference source's mode and owner.

    Returns False when the directory could not be created, in which case
    nothing below it may be woven.  Failing to copy the metadata is not
    an error.
    """
    targetpath = _join(target, path)
    try:
        os.mkdir(targetpath)
    except OSError as e:
        _warn(f"unable to create target directory '{_display(path)}': {_reason(e)}")
        return False
    if verbose:
        _note(f"mkdir {_display(path)}")

    try:
        st = os.stat(_join(reference, path))
    except OSError:
        return True
    try:
        os.chmod(targetpath, stat.S_IMODE(st.st_mode))
    except OSError:
        pass
    try:
        os.chown(targetpath, st.st_uid, st.st_gid)
    except OSError:
        pass
    return True


def _list_visible(source, path):
    """Yield the names in source/path, skipping dot entries.

    The directory handle is closed before this generator finishes, even
    when reading fails partway through.
    """
    try:
        with os.scandir(_join(source, path)) as it:
            for dirent in it:
                if not dirent.name.startswith("."):
                    yield dirent.name
    except OSError as e:
        _warn(f"unable to open directory '{_display(path)}' in '{source}': {_reason(e)}")


def _place_entry(target, entry, entrypath, source, mode, verbose):
    """Materialize the first-seen entry for a name.

    Returns True when *source* now owns the name.  Directories are only
    claimed here; weave_dir creates them later.  A failed link or
    symlink leaves the name unclaimed so a lower-priority source may
    still provide it.
    """
    if stat.S_ISDIR(mode):
        return True

    dest = os.path.join(target, entry)
    if stat.S_ISREG(mode):
        try:
            os.link(entrypath, dest)
        except OSError as e:
            _warn(f"unable to create link for '{entry}' from '{source}': {_reason(e)}")
            return False
        if verbose:
            _note(f"link {entry} from '{source}'")
        return True

    if stat.S_ISLNK(mode):
        try:
            destpath = resolve_link(entrypath)
        except OSError as e:
            _warn(f"unable to create symlink for '{entry}' in '{source}': {_reason(e)}")
            return False
        try:
            os.symlink(destpath, dest)
        except OSError as e:
            _warn(f"unable to create symlink for '{entry}' in '{source}' "
                  f"to '{destpath}': {_reason(e)}")
            return False
        if verbose:
            _note(f"symlink {entry} -> {destpath}")
        return True

    _warn(f"encountered special file '{entry}' in '{source}'")
    return False


def _merge_dir(target, path, sources, verbose):
    """Create target/path and place every file and symlink below it.

    Returns the subdirectories still to be woven as a dict of
    name -> sources holding a directory of that name, in priority order.
    """
    if not _make_target_dir(target, path, sources[0], verbose):
        return {}

    mapped = {}   # name -> (source, lstat) of the entry that won it
    subdirs = {}  # name -> sources with a directory of that name

    for source in sources:
        for name in _list_visible(source, path):
            entry = _join(path, name)
            entrypath = os.path.join(source, entry)

            try:
                st = os.lstat(entrypath)
            except OSError:
                _warn(f"unable to stat '{entry}' in '{source}'")
                continue
            mode = stat.S_IFMT(st.st_mode)

            mapping = mapped.get(name)
            if mapping is not None:
                winner, winner_st = mapping
                winner_mode = stat.S_IFMT(winner_st.st_mode)
                if winner_mode != mode:
                    _warn(f"type conflict on '{entry}':\n"
                          f"    using a {type_name(winner_mode)} from '{winner}'\n"
                          f"    found a {type_name(mode)} in '{source}'")
                elif stat.S_ISDIR(mode):
                    subdirs[name].append(source)
                continue

            if not _place_entry(target, entry, entrypath, source, mode, verbose):
                continue
            if stat.S_ISDIR(mode):
                subdirs[name] = [source]
            mapped[name] = (source, st)

    return subdirs


def weave_dir(target, path, sources, verbose=False):
    """Weave the directory at composite path *path* into *target*.

    *sources* are the roots known to hold a directory at *path*, highest
    priority first; the first of them supplies the new directory's mode
    and ownership.  Subdirectories are woven depth first from the sources
    that contain them.  The walk keeps its own stack so tree depth is not
    bounded by the interpreter's recursion limit.
    """
    pending = [(path, sources)]
    while pending:
        path, sources = pending.pop()
        subdirs = _merge_dir(target, path, sources, verbose)
        # reversed so the first-seen subdirectory is popped first
        for name, dir_sources in reversed(subdirs.items()):
            pending.append((_join(path, name), dir_sources))


def weave(sources, target, verbose=False):
    """Weave *sources* (highest priority first) into the new tree *target*."""
    weave_dir(target, "", list(sources), verbose)


def check_layout(sources, target):
    """Return every problem that rules out weaving *sources* into *target*.

    Sources must be existing directories on one device (hard links cannot
    cross filesystems) and the target must not exist yet.
    """
    errors = []
    devnum = None
    for source in sources:
        if not os.path.exists(source):
            errors.append(f"source '{source}' does not exist")
            continue
        if not os.path.isdir(source):
            errors.append(f"source '{source}' is not a directory")
            continue
        curdev = os.stat(source).st_dev
        if devnum is None:
            devnum = curdev
        elif curdev != devnum:
            errors.append(f"source '{source}' is on another device")

    if os.path.lexists(target):
        errors.append(f"target '{target}' already exists")
    return errors


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Overlay directory trees into one using hard links",
        usage="%(prog)s [-v] SOURCE [SOURCE ...] TARGET\n"
              "       %(prog)s [-v] --manifest FILE",
    )
    parser.add_argument("paths", nargs="*", metavar="PATH",
                        help="Source directories, highest priority first, then the target")
    parser.add_argument("--manifest", default=None,
                        help="YAML file listing the sources and the target")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Report every directory, link and symlink created")
    args = parser.parse_args(argv)

    if args.manifest:
        if args.paths:
            print("error: paths cannot be given together with --manifest", file=sys.stderr)
            sys.exit(1)
        try:
            sources, target = load_manifest(args.manifest)
        except ManifestError as e:
            print(f"error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        if len(args.paths) < 2:
            parser.print_usage(sys.stderr)
            sys.exit(1)
        sources, target = args.paths[:-1], args.paths[-1]

    errors = check_layout(sources, target)
    if errors:
        for err in errors:
            print(f"error: {err}", file=sys.stderr)
        sys.exit(2)

    weave(sources, target, verbose=args.verbose)


if __name__ == "__main__":
    main()
