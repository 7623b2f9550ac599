from __future__ import annotations

import argparse
import getpass as _getpass
import os
import sys
import time
from typing import List, Optional

from sheaf.encryption import ARGON_MEMORY_COST_KIB, ARGON_TIME_COST, EncryptionParams, SALT_SIZE
from sheaf.entry import Entry
from sheaf.errors import EncryptedArchiveRequiresPassword, SheafError
from sheaf.packer import UNSUPPORTED_POLICIES, pack
from sheaf.pathutil import destination_path
from sheaf.reader import ArchiveReader
from sheaf.unpacker import EXISTS_POLICIES, unpack


def _resolve_password(password: Optional[str], ask: bool, *, confirm: bool = False) -> Optional[str]:
    if password or not ask:
        return password
    pw = _getpass.getpass("Archive password: ")
    if confirm and _getpass.getpass("Repeat password: ") != pw:
        raise ValueError("Passwords do not match")
    return pw


def cmd_pack(
    root: str,
    output: str,
    *,
    arcname: Optional[str] = None,
    password: Optional[str] = None,
    unsupported: str = "skip",
    kdf_params: Optional[EncryptionParams] = None,
    quiet: bool = False,
) -> bool:
    """Pack a file or directory tree into an archive.

    Args:
        root: File or directory to archive.
        output: Archive path, or "-" to stream to stdout.
        arcname: Store the root under this name instead of by content.
        password: Optional encryption password.
        unsupported: "skip" or "error" for symlinks, sockets, devices.
        kdf_params: Argon2id cost for the password; library defaults when None.
        quiet: Only print the final summary.
    """
    to_stdout = output == "-"
    # progress never goes to stdout while the archive does
    log = sys.stderr if to_stdout else sys.stdout

    def _progress(e: Entry) -> None:
        if not quiet:
            suffix = "/" if e.is_dir else ""
            print(f"    packing: {e.path}{suffix}", file=log)

    t0 = time.time()
    target = sys.stdout.buffer if to_stdout else output
    stats = pack(
        root,
        target,
        arcname=arcname,
        password=password,
        unsupported=unsupported,
        kdf_params=kdf_params,
        on_entry=_progress,
    )
    if to_stdout:
        sys.stdout.buffer.flush()
    dt = max(0.000001, time.time() - t0)
    mib = stats.bytes / (1024.0 * 1024.0)
    print(
        f"Done: {stats.files} files, {stats.dirs} dirs, {stats.skipped} skipped; "
        f"{mib:.2f} MiB in {dt:.1f}s; {mib / dt:.2f} MiB/s",
        file=log,
    )
    return True


def cmd_unpack(
    archive: str,
    *,
    outdir: str = ".",
    password: Optional[str] = None,
    paths: Optional[List[str]] = None,
    exists: str = "overwrite",
    preserve_mtime: bool = True,
    quiet: bool = False,
) -> bool:
    """Unpack an archive (path or "-" for stdin) into ``outdir``."""

    def _progress(e: Entry, dst: str) -> None:
        if quiet:
            return
        if e.is_dir:
            print(f"   creating: {e.path}/")
            return
        print(f"  unpacking: {e.path}")
        if dst != destination_path(outdir, e.path):
            print(f"       note: renamed to {dst}")

    def _skipped(e: Entry, reason: str) -> None:
        if not quiet and reason != "not selected":
            print(f"   skipping: {e.path} ({reason})")

    t0 = time.time()
    src = sys.stdin.buffer if archive == "-" else archive
    stats = unpack(
        src,
        outdir,
        password=password,
        exists=exists,
        paths=paths,
        preserve_mtime=preserve_mtime,
        on_entry=_progress,
        on_skip=_skipped,
    )
    dt = max(0.000001, time.time() - t0)
    mib = stats.bytes / (1024.0 * 1024.0)
    print(
        f"Done: extracted {stats.files} files ({mib:.2f} MiB) in {dt:.1f}s; "
        f"dirs={stats.dirs} skipped={stats.skipped} renamed={stats.renamed}"
    )
    return True


def cmd_list(archive: str, *, password: Optional[str] = None) -> bool:
    """List archive entries."""
    src = sys.stdin.buffer if archive == "-" else archive
    with ArchiveReader(src, password=password) as r:
        for e in r:
            if e.is_file:
                print(f"file\t{e.size}\t{e.mode:04o}\t{e.path}")
            else:
                print(f"dir\t-\t{e.mode:04o}\t{e.path}")
    return True


def cmd_info(archive: str, *, password: Optional[str] = None) -> bool:
    """Show superblock fields and entry totals."""
    src = sys.stdin.buffer if archive == "-" else archive
    with ArchiveReader(src, password=password) as r:
        sb = r.superblock
        assert sb is not None
        files = dirs = total = 0
        for e in r:
            if e.is_file:
                files += 1
                total += e.size
            else:
                dirs += 1
        print(f"Archive: {archive}")
        print(f"  Version: {sb.version_major}.{sb.version_minor}")
        print(f"  Flags: {sb.flags}")
        print(f"  Encrypted: {'yes' if sb.encrypted else 'no'}")
        print(f"  Chunk size: {sb.chunk_size}")
        print(f"  Entries: {files + dirs}")
        print(f"    Files: {files}")
        print(f"    Directories: {dirs}")
        print(f"  Payload bytes: {total}")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="sheaf",
        description="sheaf directory-tree archiver",
        epilog="Use '-' as the archive to stream through stdout/stdin.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_pack = sub.add_parser("pack", help="Pack a file or directory tree")
    ap_pack.add_argument("root", help="File or directory to archive")
    ap_pack.add_argument("output", help="Output archive path ('-' for stdout)")
    ap_pack.add_argument("--arcname", help="Record the root itself under this name")
    ap_pack.add_argument("--password", help="Encryption password")
    ap_pack.add_argument("--ask-password", action="store_true", help="Prompt for an encryption password")
    ap_pack.add_argument(
        "--on-unsupported",
        choices=list(UNSUPPORTED_POLICIES),
        default="skip",
        help="What to do with symlinks, sockets, FIFOs and devices (default: skip)",
    )
    ap_pack.add_argument(
        "--kdf-memory",
        type=int,
        default=ARGON_MEMORY_COST_KIB // 1024,
        help=f"Argon2id memory cost in MiB for --password (default {ARGON_MEMORY_COST_KIB // 1024})",
    )
    ap_pack.add_argument(
        "--kdf-time",
        type=int,
        default=ARGON_TIME_COST,
        help=f"Argon2id iterations for --password (default {ARGON_TIME_COST})",
    )
    ap_pack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_unpack = sub.add_parser("unpack", help="Unpack an archive")
    ap_unpack.add_argument("archive", help="Archive path ('-' for stdin)")
    ap_unpack.add_argument("paths", nargs="*", help="Specific archive paths to extract (files or directories)")
    ap_unpack.add_argument("--outdir", default=".", help="Output directory")
    ap_unpack.add_argument("--password", help="Archive password")
    ap_unpack.add_argument("--ask-password", action="store_true", help="Prompt for the archive password")
    ap_unpack.add_argument(
        "--exists",
        choices=list(EXISTS_POLICIES),
        default="overwrite",
        help=(
            "What to do if a destination file exists: overwrite (truncate), skip (keep existing), "
            "rename (append ' (n)' before extension), or fail (abort). Default: overwrite"
        ),
    )
    ap_unpack.add_argument("--no-mtime", action="store_true", help="Do not restore file modification times")
    ap_unpack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_list = sub.add_parser("list", help="List archive contents")
    ap_list.add_argument("archive", help="Archive path ('-' for stdin)")
    ap_list.add_argument("--password", help="Archive password")
    ap_list.add_argument("--ask-password", action="store_true", help="Prompt for the archive password")

    ap_info = sub.add_parser("info", help="Show archive information")
    ap_info.add_argument("archive", help="Archive path ('-' for stdin)")
    ap_info.add_argument("--password", help="Archive password")
    ap_info.add_argument("--ask-password", action="store_true", help="Prompt for the archive password")

    args = ap.parse_args(argv)
    try:
        if args.cmd == "pack":
            pw = _resolve_password(args.password, args.ask_password, confirm=True)
            kdf = None
            if pw:
                kdf = EncryptionParams(
                    salt=os.urandom(SALT_SIZE),
                    time_cost=args.kdf_time,
                    memory_cost_kib=args.kdf_memory * 1024,
                )
            cmd_pack(
                args.root,
                args.output,
                arcname=args.arcname,
                password=pw,
                unsupported=args.on_unsupported,
                kdf_params=kdf,
                quiet=args.quiet,
            )
        elif args.cmd == "unpack":
            pw = _resolve_password(args.password, args.ask_password)
            cmd_unpack(
                args.archive,
                outdir=args.outdir,
                password=pw,
                paths=args.paths,
                exists=args.exists,
                preserve_mtime=not args.no_mtime,
                quiet=args.quiet,
            )
        elif args.cmd == "list":
            cmd_list(args.archive, password=_resolve_password(args.password, args.ask_password))
        elif args.cmd == "info":
            cmd_info(args.archive, password=_resolve_password(args.password, args.ask_password))
        else:
            raise RuntimeError("Unknown command")
    except EncryptedArchiveRequiresPassword:
        print("Error: Archive is encrypted. Provide --password or --ask-password.", file=sys.stderr)
        sys.exit(2)
    except (SheafError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
