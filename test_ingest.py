#!/usr/bin/env python3
"""
Tests for repository cloning and file discovery
"""

import os
import sys
import shutil
import tempfile
import subprocess
import unittest
from unittest.mock import patch

# Add the app directory to the path so we can import our modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'app'))

import config
from ingest import (
    get_repo_path,
    is_queryable,
    load_documents,
    normalize_repo_url,
    read_files_recursively,
    repo_slug,
)


def _write(root, rel, content, mode="w"):
    path = os.path.join(root, rel)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, mode) as f:
        f.write(content)
    return path


class TestRepoSlug(unittest.TestCase):

    def test_strips_git_suffix_and_keeps_name(self):
        slug = repo_slug("https://github.com/octo/hello-world.git")
        self.assertTrue(slug.startswith("hello-world-"))

    def test_same_name_different_owner_do_not_collide(self):
        a = repo_slug("https://github.com/alice/tools")
        b = repo_slug("https://github.com/bob/tools")
        self.assertNotEqual(a, b)

    def test_trailing_slash_is_ignored(self):
        self.assertEqual(
            repo_slug("https://github.com/octo/app/"),
            repo_slug("https://github.com/octo/app"),
        )

    def test_empty_link_rejected(self):
        with self.assertRaises(ValueError):
            repo_slug("   ")

    def test_git_suffix_and_bare_link_share_a_checkout(self):
        self.assertEqual(
            repo_slug("https://github.com/octo/app.git"),
            repo_slug("https://github.com/octo/app"),
        )
        self.assertEqual(
            normalize_repo_url("  https://github.com/octo/app.git/ "),
            "https://github.com/octo/app",
        )


class TestFileDiscovery(unittest.TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp()
        _write(self.root, "README.md", "# Demo\n\nSome docs.")
        _write(self.root, "src/app.py", "print('hi')\n")
        _write(self.root, "src/logo.PNG", b"\x89PNG", mode="wb")
        _write(self.root, "node_modules/lib/index.js", "module.exports = 1;")
        _write(self.root, ".git/config", "[core]")
        _write(self.root, ".github/workflows/ci.yml", "on: push")
        _write(self.root, ".env", "SECRET=1")
        _write(self.root, "empty.txt", "   \n")
        _write(self.root, "latin1.txt", "caf\xe9".encode("latin-1"), mode="wb")

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_is_queryable_rejects_media_and_archives(self):
        for name in ["a.jpg", "b.GIF", "c.tar", "d.gz", "e.dll", "f.mp4"]:
            self.assertFalse(is_queryable(name, 10), name)
        self.assertTrue(is_queryable("main.go", 10))

    def test_is_queryable_rejects_large_files(self):
        with patch.object(config, "MAX_FILE_BYTES", 100):
            self.assertTrue(is_queryable("a.py", 100))
            self.assertFalse(is_queryable("a.py", 101))

    def test_read_files_recursively_skips_hidden_and_vendor_dirs(self):
        rel = [os.path.relpath(p, self.root).replace(os.sep, "/") for p in read_files_recursively(self.root)]
        self.assertEqual(rel, ["README.md", "empty.txt", "latin1.txt", "src/app.py"])

    def test_load_documents_skips_empty_and_undecodable(self):
        docs = load_documents(self.root)
        self.assertEqual(sorted(docs), ["README.md", "src/app.py"])
        self.assertEqual(docs["src/app.py"], "print('hi')\n")


@unittest.skipUnless(hasattr(os, "symlink"), "symlinks not supported")
class TestSymlinksAreNotFollowed(unittest.TestCase):

    def setUp(self):
        self.outside = tempfile.mkdtemp()
        self.root = tempfile.mkdtemp()
        self.secret = _write(self.outside, "secrets.txt", "DB_PASSWORD=hunter2\n")
        _write(self.outside, "private/id_rsa.pub", "ssh-rsa AAAA\n")
        _write(self.root, "README.md", "# Demo\n")
        _write(self.root, "docs/guide.md", "Guide\n")

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)
        shutil.rmtree(self.outside, ignore_errors=True)

    def test_file_link_pointing_outside_is_skipped(self):
        os.symlink(self.secret, os.path.join(self.root, "notes.txt"))

        docs = load_documents(self.root)

        self.assertEqual(sorted(docs), ["README.md", "docs/guide.md"])
        self.assertNotIn("hunter2", "".join(docs.values()))

    def test_directory_link_is_not_walked(self):
        os.symlink(os.path.join(self.outside, "private"), os.path.join(self.root, "keys"))

        rel = [os.path.relpath(p, self.root).replace(os.sep, "/") for p in read_files_recursively(self.root)]

        self.assertEqual(rel, ["README.md", "docs/guide.md"])

    def test_link_inside_checkout_is_skipped_too(self):
        os.symlink(os.path.join(self.root, "README.md"), os.path.join(self.root, "docs/README.md"))

        self.assertEqual(sorted(load_documents(self.root)), ["README.md", "docs/guide.md"])


class TestGetRepoPath(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.source = os.path.join(self.test_dir, "source-repo")
        self.repos_dir = os.path.join(self.test_dir, "repos")
        os.makedirs(self.source)
        subprocess.run(["git", "init"], cwd=self.source, check=True)
        subprocess.run(["git", "config", "user.name", "Test User"], cwd=self.source, check=True)
        subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=self.source, check=True)
        _write(self.source, "main.py", "def main():\n    return 1\n")
        subprocess.run(["git", "add", "main.py"], cwd=self.source, check=True)
        subprocess.run(["git", "commit", "-m", "Initial commit"], cwd=self.source, check=True)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_clones_then_pulls(self):
        path = get_repo_path(self.source, base_dir=self.repos_dir)
        self.assertTrue(os.path.isfile(os.path.join(path, "main.py")))

        _write(self.source, "utils.py", "X = 1\n")
        subprocess.run(["git", "add", "utils.py"], cwd=self.source, check=True)
        subprocess.run(["git", "commit", "-m", "Add utils"], cwd=self.source, check=True)

        again = get_repo_path(self.source, base_dir=self.repos_dir)
        self.assertEqual(path, again)
        self.assertTrue(os.path.isfile(os.path.join(again, "utils.py")))

    def test_failed_pull_keeps_existing_checkout(self):
        path = get_repo_path(self.source, base_dir=self.repos_dir)
        shutil.rmtree(self.source)

        again = get_repo_path(self.source, base_dir=self.repos_dir)
        self.assertEqual(path, again)
        self.assertTrue(os.path.isfile(os.path.join(again, "main.py")))


if __name__ == "__main__":
    unittest.main(verbosity=2)
