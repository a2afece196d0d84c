from __future__ import annotations

import io
import struct
import tracemalloc
import unittest
import warnings
import zipfile
import zlib

from zipcommit.archive import Archive
from zipcommit.codec import Codec, _HAS_ZSTD
from zipcommit.encryption import EncryptionContext, EncryptionParams, KdfParams
from zipcommit.errors import ArchiveFormatError, UnsupportedCompressionError
from zipcommit.pathutil import filename_from_path, temp_path_for, validate_entry_name
from zipcommit.zipformat import build_extra, date_time_tuple, dos_datetime, parse_extra


CHEAP_KDF = KdfParams(time_cost=1, memory_cost_kib=1024, parallelism=1)


class _WriteOnlySink:
    """Minimal non-seekable output stream."""

    def __init__(self):
        self.chunks = []

    def write(self, data):
        self.chunks.append(bytes(data))
        return len(data)

    def getvalue(self) -> bytes:
        return b"".join(self.chunks)


def _serialize(archive: Archive) -> bytes:
    buf = io.BytesIO()
    archive.write_to(buf)
    return buf.getvalue()


def _decoded(archive: Archive, name: str) -> bytes:
    stream = archive.get_entry(name).open_decoded_stream()
    assert stream is not None, f"entry {name!r} could not be decoded"
    return stream.read()


class ArchiveTests(unittest.TestCase):
    def test_empty_stream_is_empty_archive(self):
        archive = Archive.from_stream(io.BytesIO(b""))
        self.assertEqual(0, len(archive))
        self.assertEqual([], archive.names())

    def test_create_entry_refuses_duplicates(self):
        archive = Archive()
        first = archive.create_entry("a.txt")
        self.assertIsNotNone(first)
        self.assertIsNone(archive.create_entry("a.txt"))
        self.assertIs(first, archive.get_entry("a.txt"))
        self.assertIsNotNone(archive.create_entry("A.txt"))
        self.assertEqual(["a.txt", "A.txt"], archive.names())

    def test_invalid_entry_names(self):
        archive = Archive()
        for bad in ("", "nul\x00byte", "x" * 70000):
            with self.assertRaises(ValueError):
                archive.create_entry(bad)
        self.assertEqual(0, len(archive))

    def test_remove_entry_is_idempotent(self):
        archive = Archive()
        archive.create_entry("a").set_compression_stream(io.BytesIO(b"a"))
        self.assertTrue(archive.remove_entry("a"))
        self.assertFalse(archive.remove_entry("a"))
        self.assertNotIn("a", archive)

    def test_write_to_non_seekable_stream(self):
        archive = Archive(comment=b"archive comment")
        archive.create_entry("plain.txt").set_compression_stream(io.BytesIO(b"plain " * 100))
        described = archive.create_entry("described.bin")
        described.use_data_descriptor()
        described.set_compression_stream(io.BytesIO(bytes(range(256)) * 4), Codec.by_name("stored"))

        sink = _WriteOnlySink()
        written = archive.write_to(sink)
        raw = sink.getvalue()
        self.assertEqual(len(raw), written)

        reread = Archive.from_stream(io.BytesIO(raw))
        self.assertEqual(["plain.txt", "described.bin"], reread.names())
        self.assertEqual(b"archive comment", reread.comment)
        self.assertTrue(reread.get_entry("described.bin").uses_data_descriptor)
        self.assertFalse(reread.get_entry("plain.txt").uses_data_descriptor)
        self.assertEqual(bytes(range(256)) * 4, _decoded(reread, "described.bin"))
        with zipfile.ZipFile(io.BytesIO(raw)) as zf:
            self.assertIsNone(zf.testzip())

    def test_pending_entry_metadata(self):
        data = b"some content\n" * 30
        archive = Archive()
        entry = archive.create_entry("f")
        entry.set_compression_stream(io.BytesIO(data), Codec.by_name("deflate", 9))
        self.assertEqual(len(data), entry.size)
        self.assertEqual(zlib.crc32(data), entry.crc32)
        self.assertLess(entry.compressed_size, entry.size)
        self.assertEqual("deflate", entry.codec.name)
        self.assertFalse(entry.is_encrypted)
        self.assertEqual(data, _decoded(archive, "f"))

    def test_password_rules(self):
        archive = Archive()
        entry = archive.create_entry("f")
        with self.assertRaises(ValueError):
            entry.set_password("")
        entry.set_compression_stream(io.BytesIO(b"data"))
        entry.size  # materializes the payload
        with self.assertRaises(RuntimeError):
            entry.set_password("late")

    def test_encrypted_payload_hides_plaintext(self):
        marker = b"secret-marker"
        archive = Archive()
        entry = archive.create_entry("secret.txt")
        entry.set_password("pw", CHEAP_KDF)
        entry.use_data_descriptor()
        entry.set_compression_stream(io.BytesIO(marker * 100), Codec.by_name("stored"))
        raw = _serialize(archive)
        self.assertNotIn(marker, raw)

        reread = Archive.from_stream(io.BytesIO(raw))
        secret = reread.get_entry("secret.txt")
        self.assertTrue(secret.is_encrypted)
        self.assertIsNone(secret.open_decoded_stream())
        secret.set_password("wrong")
        self.assertIsNone(secret.open_decoded_stream())
        secret.set_password("pw")
        self.assertEqual(marker * 100, secret.open_decoded_stream().read())

    def test_tampered_ciphertext_fails_authentication(self):
        archive = Archive()
        entry = archive.create_entry("secret.bin")
        entry.set_password("pw", CHEAP_KDF)
        entry.set_compression_stream(io.BytesIO(b"payload" * 64))
        raw = bytearray(_serialize(archive))

        with zipfile.ZipFile(io.BytesIO(bytes(raw))) as zf:
            info = zf.getinfo("secret.bin")
            start = info.header_offset + 30 + len(info.filename.encode("utf-8")) + len(info.extra)
        # Past the 24-byte nonce, inside the ciphertext
        raw[start + 30] ^= 0x01

        reread = Archive.from_stream(io.BytesIO(bytes(raw)))
        tampered = reread.get_entry("secret.bin")
        tampered.set_password("pw")
        self.assertIsNone(tampered.open_decoded_stream())

    def test_corrupted_plain_payload_fails_crc(self):
        data = b"A" * 100
        archive = Archive()
        archive.create_entry("a").set_compression_stream(io.BytesIO(data), Codec.by_name("stored"))
        raw = bytearray(_serialize(archive))
        idx = raw.find(data)
        raw[idx + 5] = ord("B")

        reread = Archive.from_stream(io.BytesIO(bytes(raw)))
        with self.assertRaises(ArchiveFormatError):
            reread.get_entry("a").open_decoded_stream()

    def test_rebinding_clears_encryption(self):
        archive = Archive()
        entry = archive.create_entry("f")
        entry.set_password("pw", CHEAP_KDF)
        entry.set_compression_stream(io.BytesIO(b"v1"))
        reread = Archive.from_stream(io.BytesIO(_serialize(archive)))

        again = reread.get_entry("f")
        self.assertTrue(again.is_encrypted)
        again.set_compression_stream(io.BytesIO(b"v2"))
        self.assertFalse(again.is_encrypted)
        final = Archive.from_stream(io.BytesIO(_serialize(reread)))
        self.assertFalse(final.get_entry("f").is_encrypted)
        self.assertEqual(b"v2", _decoded(final, "f"))

    def test_duplicate_names_keep_last(self):
        buf = io.BytesIO()
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            with zipfile.ZipFile(buf, "w") as zf:
                zf.writestr("dup.txt", b"first")
                zf.writestr("dup.txt", b"second")
        with self.assertLogs("zipcommit.archive", level="WARNING"):
            archive = Archive.from_stream(io.BytesIO(buf.getvalue()))
        self.assertEqual(["dup.txt"], archive.names())
        self.assertEqual(b"second", _decoded(archive, "dup.txt"))

    def test_unknown_method_is_carried_through(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_LZMA) as zf:
            zf.writestr("lzma.txt", b"lzma content " * 50)
        archive = Archive.from_stream(io.BytesIO(buf.getvalue()))
        entry = archive.get_entry("lzma.txt")
        self.assertEqual(zipfile.ZIP_LZMA, entry.compression_method)
        with self.assertRaises(UnsupportedCompressionError):
            entry.open_decoded_stream()

        archive.create_entry("new.txt").set_compression_stream(io.BytesIO(b"new"))
        with zipfile.ZipFile(io.BytesIO(_serialize(archive))) as zf:
            self.assertEqual(b"lzma content " * 50, zf.read("lzma.txt"))
            self.assertEqual(b"new", zf.read("new.txt"))

    def test_inflation_is_bounded_by_declared_size(self):
        # 64 MiB of zeros deflates to about 64 KiB
        c = zlib.compressobj(9, zlib.DEFLATED, -15)
        bomb = b"".join(c.compress(bytes(1 << 20)) for _ in range(64)) + c.flush()
        archive = Archive()
        archive.create_entry("small.txt").set_compression_stream(io.BytesIO(bomb), Codec.by_name("stored"))
        raw = bytearray(_serialize(archive))

        # Relabel as deflate and declare 10 uncompressed bytes in both headers
        local = 0
        central = struct.unpack_from("<I", raw, len(raw) - 22 + 16)[0]
        struct.pack_into("<H", raw, local + 8, 8)
        struct.pack_into("<I", raw, local + 22, 10)
        struct.pack_into("<H", raw, central + 10, 8)
        struct.pack_into("<I", raw, central + 24, 10)
        reread = Archive.from_stream(io.BytesIO(bytes(raw)))
        entry = reread.get_entry("small.txt")
        self.assertEqual(10, entry.size)

        tracemalloc.start()
        try:
            with self.assertRaisesRegex(ArchiveFormatError, "declared size"):
                entry.open_decoded_stream()
            _current, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()
        self.assertLess(peak, 8 * 1024 * 1024)

    def test_truncated_archive(self):
        archive = Archive()
        archive.create_entry("a").set_compression_stream(io.BytesIO(b"abc"))
        raw = _serialize(archive)
        with self.assertRaises(ArchiveFormatError):
            Archive.from_stream(io.BytesIO(raw[:-10]))

    def test_zip64_and_multi_disk_rejected(self):
        zip64 = struct.pack("<IHHHHIIH", 0x06054B50, 0, 0, 0xFFFF, 0xFFFF, 0, 0, 0)
        with self.assertRaisesRegex(ArchiveFormatError, "ZIP64"):
            Archive.from_stream(io.BytesIO(zip64))
        multi = struct.pack("<IHHHHIIH", 0x06054B50, 1, 0, 0, 0, 0, 0, 0)
        with self.assertRaisesRegex(ArchiveFormatError, "Multi-disk"):
            Archive.from_stream(io.BytesIO(multi))


class CodecTests(unittest.TestCase):
    def test_lookup_by_name(self):
        self.assertEqual(Codec(0), Codec.by_name("stored"))
        self.assertEqual(Codec(12, 5), Codec.by_name("BZIP2", 5))
        with self.assertRaises(UnsupportedCompressionError):
            Codec.by_name("lzma")
        with self.assertRaises(UnsupportedCompressionError):
            Codec(99).ensure_available()

    def test_deflate_is_raw(self):
        data = b"raw deflate stream " * 40
        out = Codec.by_name("deflate").compress(data)
        self.assertEqual(data, zlib.decompress(out, -15))

    def test_corrupt_input(self):
        with self.assertRaises(ArchiveFormatError):
            Codec.by_name("bzip2").decompress(b"definitely not bzip2")
        truncated = Codec.by_name("bzip2").compress(b"abc" * 1000)[:-8]
        with self.assertRaises(ArchiveFormatError):
            Codec.by_name("bzip2").decompress(truncated, 3000)

    def test_expected_size_caps_output(self):
        data = bytes(1 << 20)
        for name in ("deflate", "bzip2") + (("zstd",) if _HAS_ZSTD else ()):
            with self.subTest(method=name):
                codec = Codec.by_name(name)
                packed = codec.compress(data)
                self.assertEqual(data, codec.decompress(packed, len(data)))
                with self.assertRaisesRegex(ArchiveFormatError, "declared size"):
                    codec.decompress(packed, 10)
                with self.assertRaisesRegex(ArchiveFormatError, "declared size"):
                    codec.decompress(packed, len(data) - 1)
        self.assertEqual(b"", Codec.by_name("deflate").decompress(Codec.by_name("deflate").compress(b""), 0))

    @unittest.skipIf(_HAS_ZSTD, "zstandard is installed")
    def test_zstd_requires_module(self):
        with self.assertRaises(UnsupportedCompressionError):
            Codec.by_name("zstd").ensure_available()

    @unittest.skipUnless(_HAS_ZSTD, "zstandard not installed")
    def test_zstd_roundtrip(self):
        codec = Codec.by_name("zstd")
        data = b"zstd payload " * 100
        self.assertEqual(data, codec.decompress(codec.compress(data)))


class EncryptionTests(unittest.TestCase):
    def test_params_field_roundtrip(self):
        params = EncryptionParams(salt=b"s" * 16, kdf=CHEAP_KDF)
        raw = params.pack()
        self.assertEqual(27, len(raw))
        self.assertEqual(params, EncryptionParams.unpack(raw))

    def test_params_field_rejects_unknown_values(self):
        raw = bytearray(EncryptionParams(salt=b"s" * 16, kdf=CHEAP_KDF).pack())
        bad_version = bytes([2]) + bytes(raw[1:])
        with self.assertRaises(ArchiveFormatError):
            EncryptionParams.unpack(bad_version)
        with self.assertRaises(ArchiveFormatError):
            EncryptionParams.unpack(bytes(raw[:10]))
        huge_memory = EncryptionParams(salt=b"s" * 16, kdf=KdfParams(1, 1024, 1)).pack()
        huge_memory = huge_memory[:6] + struct.pack("<I", 1 << 30) + huge_memory[10:]
        with self.assertRaises(ArchiveFormatError):
            EncryptionParams.unpack(huge_memory)

    def test_kdf_bounds(self):
        with self.assertRaises(ValueError):
            KdfParams(time_cost=0).validate()
        with self.assertRaises(ValueError):
            KdfParams(memory_cost_kib=4, parallelism=1).validate()
        CHEAP_KDF.validate()

    def test_aad_binds_entry_name(self):
        ctx = EncryptionContext.create("pw", CHEAP_KDF)
        payload = ctx.encrypt(b"a.txt", b"content")
        self.assertEqual(len(b"content") + ctx.overhead(), len(payload))
        self.assertEqual(b"content", ctx.decrypt(b"a.txt", payload))
        self.assertIsNone(ctx.decrypt(b"b.txt", payload))

        other = EncryptionContext.from_params("pw", ctx.export_params())
        self.assertEqual(b"content", other.decrypt(b"a.txt", payload))
        wrong = EncryptionContext.from_params("nope", ctx.export_params())
        self.assertIsNone(wrong.decrypt(b"a.txt", payload))


class FormatHelperTests(unittest.TestCase):
    def test_extra_fields(self):
        fields = {0x7A63: b"abc", 0x5455: b"\x01\x02"}
        self.assertEqual(fields, parse_extra(build_extra(fields)))
        with self.assertRaises(ArchiveFormatError):
            parse_extra(b"\x63\x7a\x10\x00abc")

    def test_dos_timestamps(self):
        dos_time, dos_date = dos_datetime(0)
        self.assertEqual(1980, date_time_tuple(dos_time, dos_date)[0])
        _y, _mo, _d, _h, _mi, sec = date_time_tuple(*dos_datetime())
        self.assertEqual(0, sec % 2)

    def test_path_helpers(self):
        self.assertEqual("c.txt", filename_from_path("a/b/c.txt"))
        self.assertEqual("c.txt", filename_from_path("a\\b\\c.txt"))
        self.assertEqual("b", filename_from_path("a/b/"))
        with self.assertRaises(ValueError):
            filename_from_path("/")
        self.assertEqual("archive.zip.tmp", temp_path_for("dir/archive.zip").name)
        self.assertEqual("ok", validate_entry_name("ok"))


if __name__ == "__main__":
    unittest.main()
