"""Tests for the markdown document store."""

import pytest

from conftest import create_note
from linkweave.config import HASH_BOUNDARY
from linkweave.documents import (
    DocumentError,
    DocumentStore,
    content_hash,
    display_name,
    extract_hashable_body,
    has_hash_boundary,
    split_front_matter,
)

NOTE = f"""---
title: Example
note_id: n1
---

Body text.

{HASH_BOUNDARY}
- [[other]]
"""


class TestHashableBody:
    """Tests for body extraction and hashing."""

    def test_split_front_matter(self):
        front, body = split_front_matter(NOTE)
        assert front.startswith("---\n") and front.endswith("---\n")
        assert body.lstrip().startswith("Body text.")

    def test_no_front_matter(self):
        assert split_front_matter("just text") == ("", "just text")

    def test_body_excludes_front_matter_and_link_region(self):
        assert extract_hashable_body(NOTE) == "Body text."

    def test_hash_ignores_link_region(self):
        """Rewriting links after the marker does not change the hash."""
        relinked = NOTE.replace("- [[other]]", "- [[third]]\n- [[fourth]]")
        assert content_hash(relinked) == content_hash(NOTE)

    def test_hash_ignores_front_matter(self):
        retitled = NOTE.replace("title: Example", "title: Renamed\ntags: [x]")
        assert content_hash(retitled) == content_hash(NOTE)

    def test_hash_tracks_body(self):
        assert content_hash(NOTE.replace("Body text.", "Body text!")) != content_hash(NOTE)

    def test_boundary_detection(self):
        assert has_hash_boundary(NOTE)
        assert not has_hash_boundary("---\ntitle: x\n---\nplain\n")

    @pytest.mark.parametrize(
        "path,name",
        [("notes/deep/Idea.md", "Idea"), ("top.md", "top"), ("dir\\win.md", "win"), ("README", "README")],
    )
    def test_display_name(self, path, name):
        assert display_name(path) == name


class TestScan:
    """Tests for directory scanning and exclusions."""

    def test_scan_finds_markdown_sorted(self, tmp_kb):
        create_note(tmp_kb, "b.md", "B", "b")
        create_note(tmp_kb, "sub/a.md", "A", "a")
        (tmp_kb / "notes.txt").write_text("not markdown")
        assert DocumentStore(tmp_kb).scan() == ["b.md", "sub/a.md"]

    def test_excluded_folders_and_patterns(self, tmp_kb):
        create_note(tmp_kb, "keep.md", "Keep", "k")
        create_note(tmp_kb, ".obsidian/plugin.md", "P", "p")
        create_note(tmp_kb, "templates/daily.md", "T", "t")
        create_note(tmp_kb, "drafts/skip.draft.md", "D", "d")
        create_note(tmp_kb, ".linkweave/stray.md", "S", "s")
        store = DocumentStore(tmp_kb, [".obsidian", "templates/"], ["*.draft.md"])
        assert store.scan() == ["keep.md"]

    def test_folder_prefix_matches_whole_segment(self, tmp_kb):
        create_note(tmp_kb, "templates-old/x.md", "X", "x")
        assert DocumentStore(tmp_kb, ["templates"]).scan() == ["templates-old/x.md"]


class TestIdentity:
    """Tests for note_id management."""

    def test_existing_id_is_kept(self, tmp_kb):
        create_note(tmp_kb, "a.md", "A", "text", note_id="fixed-id")
        store = DocumentStore(tmp_kb)
        assert store.ensure_document_id("a.md") == "fixed-id"

    def test_missing_id_is_assigned_and_persisted(self, tmp_kb):
        create_note(tmp_kb, "a.md", "A", "text")
        store = DocumentStore(tmp_kb)

        assigned = store.ensure_document_id("a.md")

        assert len(assigned) == 36
        assert store.get_document_id("a.md") == assigned
        assert store.ensure_document_id("a.md") == assigned
        assert store.title_for("a.md") == "A"

    def test_assign_new_id(self, tmp_kb):
        create_note(tmp_kb, "a.md", "A", "text", note_id="dup")
        store = DocumentStore(tmp_kb)
        assert store.assign_new_id("a.md") != "dup"

    def test_invalid_front_matter_raises(self, tmp_kb):
        (tmp_kb / "bad.md").write_text("---\ntitle: [unclosed\n---\nbody\n")
        with pytest.raises(DocumentError):
            DocumentStore(tmp_kb).get_document_id("bad.md")

    def test_title_falls_back_to_file_name(self, tmp_kb):
        (tmp_kb / "Untitled Idea.md").write_text("no front matter\n")
        assert DocumentStore(tmp_kb).title_for("Untitled Idea.md") == "Untitled Idea"


class TestBoundary:
    """Tests for appending the hash-boundary marker."""

    def test_marker_appended_once(self, tmp_kb):
        path = create_note(tmp_kb, "a.md", "A", "text")
        store = DocumentStore(tmp_kb)

        assert store.ensure_hash_boundary("a.md") is True
        assert store.ensure_hash_boundary("a.md") is False
        text = path.read_text()
        assert text.count(HASH_BOUNDARY) == 1
        assert text.endswith(f"text\n\n{HASH_BOUNDARY}\n")

    def test_hash_unchanged_by_marker(self, tmp_kb):
        path = create_note(tmp_kb, "a.md", "A", "text")
        before = content_hash(path.read_text())
        DocumentStore(tmp_kb).ensure_hash_boundary("a.md")
        assert content_hash(path.read_text()) == before


class TestTags:
    """Tests for writing tags into front-matter."""

    def test_merge_keeps_existing_order(self, tmp_kb):
        (tmp_kb / "a.md").write_text("---\ntitle: A\ntags: [zeta, alpha]\n---\n\ntext\n")
        store = DocumentStore(tmp_kb)

        merged = store.write_tags("a.md", ["alpha", "new"])

        assert merged == ["zeta", "alpha", "new"]
        assert store.get_tags("a.md") == ["zeta", "alpha", "new"]

    def test_comma_separated_tags(self, tmp_kb):
        (tmp_kb / "a.md").write_text("---\ntitle: A\ntags: one, two\n---\n\ntext\n")
        assert DocumentStore(tmp_kb).get_tags("a.md") == ["one", "two"]

    def test_body_survives_tag_write(self, tmp_kb):
        path = create_note(tmp_kb, "a.md", "A", "Important body.", note_id="a", boundary=True)
        before = content_hash(path.read_text())
        DocumentStore(tmp_kb).write_tags("a.md", ["x"])
        assert content_hash(path.read_text()) == before
        assert has_hash_boundary(path.read_text())

    def test_write_to_missing_directory_raises(self, tmp_kb):
        with pytest.raises(DocumentError):
            DocumentStore(tmp_kb).write("missing/dir/a.md", "text")
