"""Tests for .gitkeep placeholder syncing."""

import pytest

from lab_hardener.placeholders import PLACEHOLDER, PlaceholderManager


@pytest.fixture
def tree(tmp_path):
    (tmp_path / "empty").mkdir()
    (tmp_path / "nested" / "deep").mkdir(parents=True)
    (tmp_path / "filled").mkdir()
    (tmp_path / "filled" / "main.tf").write_text("")
    (tmp_path / "filled" / PLACEHOLDER).write_text("")
    (tmp_path / "kept").mkdir()
    (tmp_path / "kept" / PLACEHOLDER).write_text("")
    (tmp_path / ".git" / "refs").mkdir(parents=True)
    return tmp_path


def test_sync(tree):
    report = PlaceholderManager(tree).sync()

    assert sorted(str(p.relative_to(tree)) for p in report.added) == ["empty/.gitkeep", "nested/deep/.gitkeep"]
    assert [str(p.relative_to(tree)) for p in report.removed] == ["filled/.gitkeep"]
    assert (tree / "empty" / PLACEHOLDER).exists()
    assert not (tree / "filled" / PLACEHOLDER).exists()
    assert (tree / "kept" / PLACEHOLDER).exists()
    assert not (tree / ".git" / "refs" / PLACEHOLDER).exists()

    assert PlaceholderManager(tree).check().consistent


def test_dry_run_changes_nothing(tree):
    report = PlaceholderManager(tree).sync(dry_run=True)

    assert not report.consistent
    assert not (tree / "empty" / PLACEHOLDER).exists()
    assert (tree / "filled" / PLACEHOLDER).exists()
    assert report.to_dict()["removed"] == ["filled/.gitkeep"]


def test_custom_ignores(tree):
    (tree / "build").mkdir()
    report = PlaceholderManager(tree, ignore={".git", "build"}).check()
    assert not any("build" in str(p) for p in report.added)
