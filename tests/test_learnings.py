from pathlib import Path

from ralph.state.learnings import INITIAL_TEMPLATE, LearningsStore


def test_path_layout(tmp_path: Path) -> None:
    store = LearningsStore(tmp_path)

    assert store.path("add-auth") == tmp_path / "add-auth-learnings.md"


def test_read_is_none_until_something_beyond_template(tmp_path: Path) -> None:
    store = LearningsStore(tmp_path / "nested" / "dir")

    assert store.read("demo") is None
    path = store.ensure("demo")
    assert path.read_text(encoding="utf-8") == INITIAL_TEMPLATE
    assert store.read("demo") is None

    path.write_text(INITIAL_TEMPLATE + "   \n\n", encoding="utf-8")
    assert store.read("demo") is None

    store.append("demo", ["- the build needs node 20"])
    content = store.read("demo")
    assert content is not None
    assert "- the build needs node 20" in content


def test_ensure_is_idempotent_and_preserves_content(tmp_path: Path) -> None:
    store = LearningsStore(tmp_path)
    path = store.ensure("demo")
    path.write_text(path.read_text(encoding="utf-8") + "- keep me\n", encoding="utf-8")

    store.ensure("demo")

    assert path.read_text(encoding="utf-8").endswith("- keep me\n")


def test_append_only_adds(tmp_path: Path) -> None:
    store = LearningsStore(tmp_path)
    store.append("demo", ["- one"])
    store.append("demo", ["- two", "- three\n"])
    store.append("demo", [])

    content = store.path("demo").read_text(encoding="utf-8")
    assert content == INITIAL_TEMPLATE + "- one\n- two\n- three\n"
