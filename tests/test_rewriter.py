#!/usr/bin/env python3
"""
Tests for the CRLF rewriter and atomic file replacement in crlf2lf.py.
"""

import logging
import os
import shutil
import stat
import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path to import crlf2lf module
sys.path.insert(0, str(Path(__file__).parent.parent))
import crlf2lf  # pylint: disable=wrong-import-position

# Disable logging for tests
crlf2lf.logger.setLevel(logging.CRITICAL)

SAMPLES = [
    b"",
    b"Line 1\r\nLine 2\r\nLine 3\r\n",
    b"Line 1\r\nLine 2\nLine 3\rLine 4\r\n",
    b"no line ending at all",
    b"\r\n\r\n\r\n",
    b"\n\r\n\r",
    b"a\r\r\nb",
    "Hello 世界\r\nПривет мир\r\n".encode("utf-8"),
]


class TestRewrite(unittest.TestCase):
    def test_crlf_becomes_lf(self) -> None:
        self.assertEqual(
            crlf2lf.rewrite(b"Hello\r\nWorld\r\nTest\r\n"), b"Hello\nWorld\nTest\n"
        )

    def test_lf_only_is_unchanged(self) -> None:
        data = b"Hello\nWorld\nTest\n"
        self.assertEqual(crlf2lf.rewrite(data), data)

    def test_mixed_endings(self) -> None:
        self.assertEqual(
            crlf2lf.rewrite(b"Hello\r\nWorld\nTest\r\n"), b"Hello\nWorld\nTest\n"
        )

    def test_lone_cr_is_kept_by_default(self) -> None:
        self.assertEqual(crlf2lf.rewrite(b"a\rb\r\nc\r"), b"a\rb\nc\r")

    def test_lone_cr_conversion(self) -> None:
        self.assertEqual(
            crlf2lf.rewrite(b"a\rb\r\nc\r", convert_lone_cr=True), b"a\nb\nc\n"
        )

    def test_only_the_cr_directly_before_lf_is_removed(self) -> None:
        self.assertEqual(crlf2lf.rewrite(b"a\r\r\nb"), b"a\r\nb")

    def test_byte_preservation(self) -> None:
        """Only a CR immediately followed by LF is dropped."""
        for data in SAMPLES:
            with self.subTest(data=data):
                result = crlf2lf.rewrite(data)
                self.assertLessEqual(len(result), len(data))
                self.assertEqual(result.count(b"\n"), data.count(b"\n"))
                self.assertEqual(
                    result.replace(b"\n", b""),
                    data.replace(b"\r\n", b"").replace(b"\n", b""),
                )
                self.assertEqual(len(data) - len(result), data.count(b"\r\n"))

    def test_needs_rewrite(self) -> None:
        self.assertTrue(crlf2lf.needs_rewrite(b"a\r\nb"))
        self.assertFalse(crlf2lf.needs_rewrite(b"a\rb"))
        self.assertTrue(crlf2lf.needs_rewrite(b"a\rb", convert_lone_cr=True))
        self.assertFalse(crlf2lf.needs_rewrite(b"a\nb", convert_lone_cr=True))


class TestAtomicWrite(unittest.TestCase):
    def setUp(self) -> None:
        # Create a temporary directory
        self.test_dir = tempfile.mkdtemp()
        self.test_file = os.path.join(self.test_dir, "test.txt")
        with open(self.test_file, "wb") as f:
            f.write(b"Line 1\r\nLine 2\r\n")

    def tearDown(self) -> None:
        # Clean up the temporary directory
        shutil.rmtree(self.test_dir)

    def test_replaces_content(self) -> None:
        crlf2lf.atomic_write(self.test_file, b"Line 1\nLine 2\n")

        with open(self.test_file, "rb") as f:
            self.assertEqual(f.read(), b"Line 1\nLine 2\n")
        # No temporary file is left behind
        self.assertEqual(os.listdir(self.test_dir), ["test.txt"])

    @unittest.skipIf(os.name == "nt", "POSIX permission bits")
    def test_preserves_permissions(self) -> None:
        os.chmod(self.test_file, 0o640)

        crlf2lf.atomic_write(self.test_file, b"Line 1\nLine 2\n")

        mode = stat.S_IMODE(os.stat(self.test_file).st_mode)
        self.assertEqual(mode, 0o640)


if __name__ == "__main__":
    unittest.main()
