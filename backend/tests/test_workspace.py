"""Tests for folding steps into the workspace tree."""
from sitegen.models import FileNode, NodeKind, Step, StepKind, StepStatus
from sitegen.workspace import (
    apply,
    find_node,
    flatten_files,
    flatten_mount_descriptor,
    iter_nodes,
    mark_completed,
    split_path,
    to_mount_descriptor,
)


def create(step_id, path, content):
    return Step(id=step_id, kind=StepKind.CREATE_FILE, path=path, content=content)


def command(step_id, text):
    return Step(id=step_id, kind=StepKind.RUN_COMMAND, content=text)


def nodes_at(tree, path):
    return [n for n in iter_nodes(tree) if n.path == path]


def test_rewrite_replaces_instead_of_duplicating():
    first = apply([], [create(1, "a/b.txt", "X")])
    second = apply(first.tree, [create(2, "a/b.txt", "Y")])

    files = nodes_at(second.tree, "a/b.txt")
    folders = nodes_at(second.tree, "a")
    assert len(files) == 1 and files[0].content == "Y"
    assert len(folders) == 1 and folders[0].kind == NodeKind.FOLDER


def test_siblings_share_one_folder():
    result = apply([], [create(1, "a/b.txt", "1"), create(2, "a/c.txt", "2")])

    assert len(result.tree) == 1
    folder = result.tree[0]
    assert folder.name == "a" and folder.path == "a"
    assert [c.name for c in folder.children] == ["b.txt", "c.txt"]
    assert [c.path for c in folder.children] == ["a/b.txt", "a/c.txt"]


def test_input_tree_is_not_mutated():
    original = apply([], [create(1, "index.html", "old")]).tree
    apply(original, [create(2, "index.html", "new"), create(3, "js/app.js", "1")])

    assert len(original) == 1
    assert original[0].content == "old"


def test_completed_ids_and_batch_status():
    steps = [create(1, "index.html", "<h1/>"), command(2, "npm install"), create(3, "", "x")]
    result = apply([], steps)

    assert result.completed_ids == [1, 2]
    assert [c.id for c in result.commands] == [2]
    assert 3 in result.rejected

    marked = mark_completed(steps, result.completed_ids)
    assert [s.status for s in marked] == [StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.PENDING]
    # originals untouched until the caller commits
    assert all(s.status == StepStatus.PENDING for s in steps)


def test_completed_steps_are_skipped():
    done = create(1, "skip.txt", "x").model_copy(update={"status": StepStatus.COMPLETED})
    result = apply([], [done])
    assert result.tree == []
    assert result.completed_ids == []


def test_commands_do_not_touch_tree():
    result = apply([], [command(1, "npm run build")])
    assert result.tree == []
    assert result.completed_ids == [1]


def test_deep_paths_create_every_parent():
    result = apply([], [create(1, "src/components/ui/Button.jsx", "b")])
    paths = [n.path for n in iter_nodes(result.tree)]
    assert paths == ["src", "src/components", "src/components/ui", "src/components/ui/Button.jsx"]
    assert find_node(result.tree, "src/components").kind == NodeKind.FOLDER


def test_leading_slash_and_dot_segments_normalize():
    result = apply([], [create(1, "/css/./style.css", "a"), create(2, "css/style.css", "b")])
    assert flatten_files(result.tree) == {"css/style.css": "b"}


def test_unusable_paths_are_rejected():
    assert split_path("") == []
    assert split_path("///") == []
    assert split_path("../etc/passwd") == []

    result = apply([], [create(1, "/", "x"), create(2, "../x", "y")])
    assert result.tree == []
    assert set(result.rejected) == {1, 2}
    assert result.completed_ids == []


def test_file_where_folder_exists_is_rejected():
    tree = apply([], [create(1, "assets/logo.svg", "<svg/>")]).tree
    result = apply(tree, [create(2, "assets", "oops"), create(3, "index.html", "ok")])

    assert 2 in result.rejected
    assert result.completed_ids == [3]
    assert find_node(result.tree, "assets").kind == NodeKind.FOLDER
    assert find_node(result.tree, "assets/logo.svg").content == "<svg/>"


def test_folder_where_file_exists_is_rejected():
    tree = apply([], [create(1, "readme", "text")]).tree
    result = apply(tree, [create(2, "readme/notes.md", "x")])

    assert 2 in result.rejected
    assert flatten_files(result.tree) == {"readme": "text"}


def test_mount_descriptor_shape():
    tree = apply([], [create(1, "index.html", "<h1/>"), create(2, "js/app.js", "run()")]).tree
    descriptor = to_mount_descriptor(tree)

    assert descriptor == {
        "index.html": {"file": {"contents": "<h1/>"}},
        "js": {"directory": {"app.js": {"file": {"contents": "run()"}}}},
    }
    assert flatten_mount_descriptor(descriptor) == flatten_files(tree)


def test_mount_descriptor_of_empty_folder():
    tree = [FileNode(name="empty", kind=NodeKind.FOLDER, path="empty")]
    assert to_mount_descriptor(tree) == {"empty": {"directory": {}}}
