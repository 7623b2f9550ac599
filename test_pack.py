from __future__ import annotations

import io
import os
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict

from sheaf import pack, unpack
from sheaf.encryption import EncryptionParams
from sheaf.entry import Entry, EntryKind
from sheaf.errors import (
    ArchiveFormatError,
    PathConflictError,
    ShortTransferError,
    TraversalError,
    UnsupportedEntryError,
)
from sheaf.packer import Packer
from sheaf.reader import ArchiveReader
from sheaf.tlv import tlv, varint_encode
from sheaf.constants import RTYPE_END, RTYPE_ENTRY
from sheaf.records import write_record
from sheaf.superblock import pack_superblock
from sheaf.writer import ArchiveWriter


def _create_sample_tree(base: Path) -> Path:
    root = base / "src"
    (root / "docs" / "notes").mkdir(parents=True)
    (root / "empty_dir").mkdir()
    (root / "docs" / "a.txt").write_text("hello world\n" * 50, encoding="utf-8")
    (root / "docs" / "notes" / "b.bin").write_bytes(os.urandom(70_000))
    (root / "docs" / "notes" / "zero.txt").write_bytes(b"")
    (root / "notes.md").write_text("# Title\nSome content\n", encoding="utf-8")
    os.chmod(root / "docs" / "a.txt", 0o640)
    os.chmod(root / "docs" / "notes" / "b.bin", 0o600)
    os.chmod(root / "notes.md", 0o755)
    return root


def _snapshot(root: Path) -> Dict[str, tuple]:
    """Map relative path -> (kind, content, file permission bits)."""
    out: Dict[str, tuple] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for d in dirnames:
            p = Path(dirpath) / d
            out[p.relative_to(root).as_posix()] = ("dir", None, None)
        for f in filenames:
            p = Path(dirpath) / f
            st = os.lstat(p)
            if not stat.S_ISREG(st.st_mode):
                continue
            out[p.relative_to(root).as_posix()] = ("file", p.read_bytes(), stat.S_IMODE(st.st_mode))
    return out


def _archive_entries(data: bytes, password=None):
    with ArchiveReader(io.BytesIO(data), password=password) as r:
        return r.list()


class PackUnpackTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = Path(tmp.name)

    def _pack_bytes(self, root, **kw) -> bytes:
        buf = io.BytesIO()
        pack(root, buf, **kw)
        return buf.getvalue()

    def test_roundtrip_identity(self):
        src = _create_sample_tree(self.tmp)
        archive = self.tmp / "out.sheaf"
        stats = pack(src, archive, chunk_size=16 * 1024)
        self.assertEqual(stats.files, 4)
        self.assertEqual(stats.dirs, 3)
        dest = self.tmp / "dest"
        ustats = unpack(archive, dest)
        self.assertEqual(ustats.files, 4)
        self.assertEqual(_snapshot(dest), _snapshot(src))

    def test_ordering_parent_before_child(self):
        src = _create_sample_tree(self.tmp)
        entries = _archive_entries(self._pack_bytes(src))
        paths = [e.path for e in entries]
        self.assertEqual(
            paths,
            ["docs", "docs/a.txt", "docs/notes", "docs/notes/b.bin", "docs/notes/zero.txt", "empty_dir", "notes.md"],
        )
        for i, e1 in enumerate(entries):
            for j, e2 in enumerate(entries):
                if e1.is_dir and e2.path.startswith(e1.path + "/"):
                    self.assertLess(i, j)

    def test_declared_sizes_match_source(self):
        src = _create_sample_tree(self.tmp)
        data = self._pack_bytes(src, chunk_size=4096)
        with ArchiveReader(io.BytesIO(data)) as r:
            for e in r:
                payload = r.read()
                self.assertEqual(len(payload), e.size)
                if e.is_file:
                    self.assertEqual(payload, (src / e.path).read_bytes())

    def test_readme_scenario(self):
        root = self.tmp / "single"
        root.mkdir()
        (root / "readme.txt").write_text("This archive contains some text files.")
        data = self._pack_bytes(root)
        dest = self.tmp / "dest"
        unpack(io.BytesIO(data), dest)
        self.assertEqual(sorted(os.listdir(dest)), ["readme.txt"])
        self.assertEqual((dest / "readme.txt").read_text(), "This archive contains some text files.")

    def test_empty_directory(self):
        root = self.tmp / "empty"
        root.mkdir()
        data = self._pack_bytes(root)
        self.assertEqual(_archive_entries(data), [])
        dest = self.tmp / "dest"
        unpack(io.BytesIO(data), dest)
        self.assertTrue(dest.is_dir())
        self.assertEqual(os.listdir(dest), [])

        named = self._pack_bytes(root, arcname="empty")
        self.assertEqual([e.path for e in _archive_entries(named)], ["empty"])
        dest2 = self.tmp / "dest2"
        unpack(io.BytesIO(named), dest2)
        self.assertTrue((dest2 / "empty").is_dir())
        self.assertEqual(os.listdir(dest2 / "empty"), [])

    def test_arcname_prefixes_tree(self):
        src = _create_sample_tree(self.tmp)
        entries = _archive_entries(self._pack_bytes(src, arcname="project"))
        self.assertEqual(entries[0].path, "project")
        self.assertTrue(entries[0].is_dir)
        self.assertTrue(all(e.path == "project" or e.path.startswith("project/") for e in entries))

    def test_single_file_root(self):
        f = self.tmp / "lonely.txt"
        f.write_bytes(b"just me")
        os.chmod(f, 0o604)
        entries = _archive_entries(self._pack_bytes(f))
        self.assertEqual([(e.path, e.size, e.mode) for e in entries], [("lonely.txt", 7, 0o604)])
        renamed = _archive_entries(self._pack_bytes(f, arcname="sub/renamed.txt"))
        self.assertEqual(renamed[0].path, "sub/renamed.txt")

    def test_relative_root_spelling(self):
        src = _create_sample_tree(self.tmp)
        cwd = os.getcwd()
        os.chdir(src)
        self.addCleanup(os.chdir, cwd)
        entries = _archive_entries(self._pack_bytes("."))
        self.assertIn("docs/notes/b.bin", [e.path for e in entries])

    def test_unpack_into_existing_directories(self):
        src = _create_sample_tree(self.tmp)
        data = self._pack_bytes(src)
        dest = self.tmp / "dest"
        (dest / "docs" / "notes").mkdir(parents=True)
        (dest / "unrelated.txt").write_text("keep me")
        unpack(io.BytesIO(data), dest)
        unpack(io.BytesIO(data), dest)
        self.assertEqual((dest / "unrelated.txt").read_text(), "keep me")
        self.assertEqual((dest / "docs" / "a.txt").read_text(), "hello world\n" * 50)

    def test_modes_applied_after_payload(self):
        src = self.tmp / "ro"
        src.mkdir()
        (src / "readonly.txt").write_bytes(b"r" * 100_000)
        os.chmod(src / "readonly.txt", 0o444)
        dest = self.tmp / "dest"
        unpack(io.BytesIO(self._pack_bytes(src, chunk_size=1024)), dest)
        st = os.stat(dest / "readonly.txt")
        self.assertEqual(stat.S_IMODE(st.st_mode), 0o444)
        self.assertEqual(st.st_size, 100_000)

    def test_mtime_restored(self):
        src = self.tmp / "t"
        src.mkdir()
        f = src / "old.txt"
        f.write_text("old")
        when = 1_600_000_000_123_456_789
        os.utime(f, ns=(when, when))
        recorded = os.stat(f).st_mtime_ns
        data = self._pack_bytes(src)
        dest = self.tmp / "dest"
        unpack(io.BytesIO(data), dest)
        self.assertEqual(os.stat(dest / "old.txt").st_mtime_ns, recorded)
        dest2 = self.tmp / "dest2"
        unpack(io.BytesIO(data), dest2, preserve_mtime=False)
        self.assertNotEqual(os.stat(dest2 / "old.txt").st_mtime_ns, recorded)

    @unittest.skipUnless(hasattr(os, "symlink"), "symlinks not available")
    def test_symlinks_skipped(self):
        src = _create_sample_tree(self.tmp)
        os.symlink("docs", src / "docs_link")
        os.symlink("notes.md", src / "notes_link.md")
        data = self._pack_bytes(src)
        paths = [e.path for e in _archive_entries(data)]
        self.assertNotIn("docs_link", paths)
        self.assertNotIn("notes_link.md", paths)
        self.assertFalse(any(p.startswith("docs_link/") for p in paths))
        self.assertIn("notes.md", paths)

    @unittest.skipUnless(hasattr(os, "symlink"), "symlinks not available")
    def test_symlinks_error_policy(self):
        src = _create_sample_tree(self.tmp)
        os.symlink("notes.md", src / "link.md")
        with self.assertRaises(UnsupportedEntryError) as ctx:
            self._pack_bytes(src, unsupported="error")
        self.assertTrue(ctx.exception.path.endswith("link.md"))
        with self.assertRaises(ValueError):
            self._pack_bytes(src, unsupported="ignore")

    def test_missing_root(self):
        out = self.tmp / "never.sheaf"
        with self.assertRaises(TraversalError):
            pack(self.tmp / "missing", out)
        self.assertFalse(out.exists())

    @unittest.skipIf(os.name == "nt", "backslash and colon are reserved on Windows")
    def test_names_with_backslash_and_colon_roundtrip(self):
        src = self.tmp / "odd"
        (src / "c:").mkdir(parents=True)
        (src / "c:" / "foo.txt").write_bytes(b"foo")
        (src / "a\\b.txt").write_bytes(b"ab")
        (src / "x\\..\\y").write_bytes(b"xy")
        data = self._pack_bytes(src)
        self.assertEqual(
            sorted(e.path for e in _archive_entries(data)),
            ["a\\b.txt", "c:", "c:/foo.txt", "x\\..\\y"],
        )
        dest = self.tmp / "dest"
        unpack(io.BytesIO(data), dest)
        self.assertEqual(_snapshot(dest), _snapshot(src))
        self.assertEqual(sorted(os.listdir(dest)), ["a\\b.txt", "c:", "x\\..\\y"])

    @unittest.skipUnless(os.name == "posix" and sys.getfilesystemencoding() == "utf-8", "needs byte-oriented names")
    def test_non_utf8_name_roundtrip(self):
        src = self.tmp / "raw"
        src.mkdir()
        raw_name = b"bad\xff.txt"
        try:
            with open(os.path.join(os.fsencode(src), raw_name), "wb") as fh:
                fh.write(b"payload")
        except OSError:
            self.skipTest("filesystem rejects names that are not UTF-8")
        data = self._pack_bytes(src)
        self.assertEqual([e.path for e in _archive_entries(data)], [os.fsdecode(raw_name)])
        dest = self.tmp / "dest"
        unpack(io.BytesIO(data), dest)
        self.assertEqual(os.listdir(os.fsencode(dest)), [raw_name])
        with open(os.path.join(os.fsencode(dest), raw_name), "rb") as fh:
            self.assertEqual(fh.read(), b"payload")

    def test_unstorable_name_is_traversal_error(self):
        f = self.tmp / "plain.txt"
        f.write_bytes(b"x")
        st = os.lstat(f)
        for bad in ("../plain.txt", "lone\ud800.txt"):
            with self.assertRaises(TraversalError) as ctx:
                with ArchiveWriter(io.BytesIO()) as w:
                    Packer(w).add_node(str(f), bad, st)
            self.assertEqual(ctx.exception.path, str(f))

    def test_output_same_as_file_root_refused(self):
        f = self.tmp / "data.bin"
        body = os.urandom(800)
        f.write_bytes(body)
        with self.assertRaises(TraversalError):
            pack(f, f)
        self.assertEqual(f.read_bytes(), body)

    def test_archive_inside_tree_is_not_packed(self):
        src = _create_sample_tree(self.tmp)
        stats = pack(src, src / "self.sheaf")
        with ArchiveReader(str(src / "self.sheaf")) as r:
            paths = [e.path for e in r.list()]
        self.assertNotIn("self.sheaf", paths)
        self.assertEqual(stats.skipped, 1)

    def test_source_shrinking_while_packing(self):
        src = self.tmp / "s"
        src.mkdir()
        f = src / "shrinks.bin"
        f.write_bytes(b"x" * 5000)
        st = os.lstat(f)
        f.write_bytes(b"x" * 100)
        buf = io.BytesIO()
        with self.assertRaises(ShortTransferError) as ctx:
            with ArchiveWriter(buf) as w:
                Packer(w).add_node(str(f), "shrinks.bin", st)
        self.assertEqual((ctx.exception.expected, ctx.exception.actual), (5000, 100))
        with self.assertRaises((ShortTransferError, ArchiveFormatError)):
            unpack(io.BytesIO(buf.getvalue()), self.tmp / "dest")

    def test_truncated_archive_is_short_transfer(self):
        src = self.tmp / "big"
        src.mkdir()
        (src / "payload.bin").write_bytes(os.urandom(200_000))
        data = self._pack_bytes(src, chunk_size=64 * 1024)
        dest = self.tmp / "dest"
        with self.assertRaises(ShortTransferError):
            unpack(io.BytesIO(data[: len(data) // 2]), dest)
        partial = dest / "payload.bin"
        if partial.exists():
            self.assertLess(partial.stat().st_size, 200_000)

    def test_selected_paths(self):
        src = _create_sample_tree(self.tmp)
        data = self._pack_bytes(src)
        dest = self.tmp / "dest"
        stats = unpack(io.BytesIO(data), dest, paths=["docs/notes"])
        self.assertEqual(sorted(_snapshot(dest)), ["docs", "docs/notes", "docs/notes/b.bin", "docs/notes/zero.txt"])
        self.assertEqual(stats.files, 2)
        self.assertEqual((dest / "docs/notes/b.bin").read_bytes(), (src / "docs/notes/b.bin").read_bytes())

    def test_encrypted_roundtrip(self):
        src = _create_sample_tree(self.tmp)
        kdf = EncryptionParams(salt=os.urandom(16), time_cost=1, memory_cost_kib=8 * 1024, parallelism=1)
        data = self._pack_bytes(src, password="pw", kdf_params=kdf)
        dest = self.tmp / "dest"
        unpack(io.BytesIO(data), dest, password="pw")
        self.assertEqual(_snapshot(dest), _snapshot(src))

    def test_progress_callbacks(self):
        src = _create_sample_tree(self.tmp)
        packed = []
        data = self._pack_bytes(src, on_entry=packed.append)
        self.assertEqual(len(packed), 7)
        restored = []
        unpack(io.BytesIO(data), self.tmp / "dest", on_entry=lambda e, p: restored.append((e.path, p)))
        self.assertEqual([p for p, _ in restored], [e.path for e in packed])
        self.assertEqual(restored[1][1], os.path.join(str(self.tmp / "dest"), "docs", "a.txt"))


def _handmade_archive(entries) -> bytes:
    """Archive built record by record, bypassing writer-side validation."""
    buf = io.BytesIO()
    buf.write(pack_superblock(0, 4096, None))
    seq = 0
    for kind, path, data in entries:
        hdr = tlv(1, varint_encode(kind)) + tlv(2, path.encode()) + tlv(3, varint_encode(0o644))
        if kind == 0:
            hdr += tlv(4, varint_encode(len(data)))
        write_record(buf, RTYPE_ENTRY, 0, b"", hdr, seq=seq)
        seq += 1
    write_record(buf, RTYPE_END, 0, b"", b"", seq=seq)
    return buf.getvalue()


class ConflictPolicyTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = Path(tmp.name)
        src = self.tmp / "src"
        src.mkdir()
        (src / "file.txt").write_text("alpha")
        buf = io.BytesIO()
        pack(src, buf)
        self.data = buf.getvalue()
        self.dest = self.tmp / "dest"
        self.dest.mkdir()
        (self.dest / "file.txt").write_text("beta")

    def test_overwrite(self):
        unpack(io.BytesIO(self.data), self.dest, exists="overwrite")
        self.assertEqual((self.dest / "file.txt").read_text(), "alpha")

    def test_overwrite_read_only_file(self):
        src = self.tmp / "ro_src"
        src.mkdir()
        (src / "readonly.txt").write_text("frozen")
        os.chmod(src / "readonly.txt", 0o444)
        buf = io.BytesIO()
        pack(src, buf)
        out = self.tmp / "ro_out"
        unpack(io.BytesIO(buf.getvalue()), out)
        self.assertEqual(stat.S_IMODE(os.stat(out / "readonly.txt").st_mode), 0o444)
        stats = unpack(io.BytesIO(buf.getvalue()), out, exists="overwrite")
        self.assertEqual(stats.files, 1)
        self.assertEqual((out / "readonly.txt").read_text(), "frozen")

    @unittest.skipUnless(hasattr(os, "link"), "hard links not available")
    def test_overwrite_does_not_write_through_hardlink(self):
        outside = self.tmp / "outside.txt"
        outside.write_text("keep")
        (self.dest / "file.txt").unlink()
        os.link(outside, self.dest / "file.txt")
        unpack(io.BytesIO(self.data), self.dest, exists="overwrite")
        self.assertEqual((self.dest / "file.txt").read_text(), "alpha")
        self.assertEqual(outside.read_text(), "keep")

    def test_skip(self):
        skipped = []
        stats = unpack(io.BytesIO(self.data), self.dest, exists="skip", on_skip=lambda e, r: skipped.append((e.path, r)))
        self.assertEqual((self.dest / "file.txt").read_text(), "beta")
        self.assertEqual(stats.skipped, 1)
        self.assertEqual(skipped, [("file.txt", "exists")])

    def test_rename(self):
        stats = unpack(io.BytesIO(self.data), self.dest, exists="rename")
        self.assertEqual((self.dest / "file.txt").read_text(), "beta")
        self.assertEqual((self.dest / "file (1).txt").read_text(), "alpha")
        self.assertEqual(stats.renamed, 1)

    def test_fail(self):
        with self.assertRaises(PathConflictError):
            unpack(io.BytesIO(self.data), self.dest, exists="fail")
        self.assertEqual((self.dest / "file.txt").read_text(), "beta")

    def test_unknown_policy(self):
        with self.assertRaises(ValueError):
            unpack(io.BytesIO(self.data), self.dest, exists="merge")

    def test_directory_never_replaced_by_file(self):
        (self.dest / "file.txt").unlink()
        (self.dest / "file.txt").mkdir()
        with self.assertRaises(PathConflictError):
            unpack(io.BytesIO(self.data), self.dest)

    def test_file_blocks_directory_entry(self):
        data = _handmade_archive([(1, "file.txt", b"")])
        with self.assertRaises(PathConflictError):
            unpack(io.BytesIO(data), self.dest)

    def test_duplicate_path_in_archive(self):
        buf = io.BytesIO()
        with ArchiveWriter(buf) as w:
            for body in (b"first", b"second"):
                w.write_header(Entry(path="dup.txt", kind=EntryKind.FILE, mode=0o644, size=len(body)))
                w.write(body)
        data = buf.getvalue()
        out = self.tmp / "dup_overwrite"
        unpack(io.BytesIO(data), out)
        self.assertEqual((out / "dup.txt").read_bytes(), b"second")
        out_skip = self.tmp / "dup_skip"
        unpack(io.BytesIO(data), out_skip, exists="skip")
        self.assertEqual((out_skip / "dup.txt").read_bytes(), b"first")
        with self.assertRaises(PathConflictError):
            unpack(io.BytesIO(data), self.tmp / "dup_fail", exists="fail")

    def test_parent_traversal_rejected(self):
        data = _handmade_archive([(0, "../escape.txt", b"")])
        with self.assertRaises(ArchiveFormatError):
            unpack(io.BytesIO(data), self.dest)
        self.assertFalse((self.tmp / "escape.txt").exists())

    def test_absolute_path_stays_under_destination(self):
        data = _handmade_archive([(1, "/abs_dir", b"")])
        unpack(io.BytesIO(data), self.dest)
        self.assertTrue((self.dest / "abs_dir").is_dir())


if __name__ == "__main__":
    unittest.main()
