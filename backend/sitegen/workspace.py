"""
Workspace tree builder: folds parsed Steps into the hierarchical file tree.

The tree is a forest of FileNode (top-level files and folders). `apply` never
touches the tree it is given: it works on a deep copy and returns it together
with the ids of the steps it completed. Nothing is deleted or renamed here.

Path/kind collisions (a file where a folder is needed or the reverse) reject
the step: the tree is left as it was and the step stays pending.
"""

from pydantic import BaseModel, Field

from sitegen.models import FileNode, NodeKind, Step, StepKind, StepStatus


class WorkspaceConflict(Exception):
    """A step cannot be applied without changing the kind of an existing node."""


class ApplyResult(BaseModel):
    tree: list[FileNode]
    completed_ids: list[int] = Field(default_factory=list)
    rejected: dict[int, str] = Field(default_factory=dict)  # step id -> reason
    commands: list[Step] = Field(default_factory=list)  # RunCommand steps, in order


def split_path(path: str | None) -> list[str]:
    """Segment names of a root-relative path. Empty list means unusable."""
    segments = [s for s in (path or "").replace("\\", "/").split("/") if s not in ("", ".")]
    if ".." in segments:
        return []
    return segments


def _find(nodes: list[FileNode], name: str) -> FileNode | None:
    return next((n for n in nodes if n.name == name), None)


def _check(forest: list[FileNode], segments: list[str]):
    """Walk existing nodes only; raise WorkspaceConflict before anything is written."""
    nodes = forest
    prefix = ""
    for i, name in enumerate(segments):
        prefix = f"{prefix}/{name}" if prefix else name
        node = _find(nodes, name)
        if node is None:
            return
        is_last = i == len(segments) - 1
        if is_last and node.kind != NodeKind.FILE:
            raise WorkspaceConflict(f"'{prefix}' is a folder, cannot write it as a file")
        if not is_last and node.kind != NodeKind.FOLDER:
            raise WorkspaceConflict(f"'{prefix}' is a file, cannot use it as a folder")
        nodes = node.children


def _write_file(forest: list[FileNode], segments: list[str], content: str):
    nodes = forest
    prefix = ""
    for i, name in enumerate(segments):
        prefix = f"{prefix}/{name}" if prefix else name
        node = _find(nodes, name)

        if i == len(segments) - 1:
            if node is None:
                nodes.append(FileNode(name=name, kind=NodeKind.FILE, path=prefix, content=content))
            else:
                # last writer wins
                node.content = content
            return

        if node is None:
            node = FileNode(name=name, kind=NodeKind.FOLDER, path=prefix, children=[])
            nodes.append(node)
        nodes = node.children


def apply(tree: list[FileNode], steps: list[Step]) -> ApplyResult:
    """
    Apply every pending step, in order, to a copy of `tree`.

    CreateFile steps create or replace the file at their path, creating parent
    folders as needed. RunCommand steps are not applied here; they come back in
    `commands` for the sandbox to run. Steps with an unusable path or a kind
    collision are reported in `rejected` and stay pending.
    """
    result = ApplyResult(tree=[node.model_copy(deep=True) for node in tree])
    working = result.tree

    for step in steps:
        if step.status != StepStatus.PENDING:
            continue

        if step.kind == StepKind.RUN_COMMAND:
            result.commands.append(step)
            result.completed_ids.append(step.id)
            continue

        segments = split_path(step.path)
        if not segments:
            result.rejected[step.id] = f"invalid path {step.path!r}"
            print(f"  [workspace] Step {step.id} rejected: invalid path {step.path!r}")
            continue

        try:
            _check(working, segments)
        except WorkspaceConflict as e:
            result.rejected[step.id] = str(e)
            print(f"  [workspace] Step {step.id} rejected: {e}")
            continue

        _write_file(working, segments, step.content)
        result.completed_ids.append(step.id)

    return result


def mark_completed(steps: list[Step], completed_ids: list[int]) -> list[Step]:
    """Batch status transition, done once after a whole apply pass."""
    done = set(completed_ids)
    return [
        s.model_copy(update={"status": StepStatus.COMPLETED}) if s.id in done else s
        for s in steps
    ]


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------

def find_node(tree: list[FileNode], path: str) -> FileNode | None:
    nodes = tree
    node = None
    for name in split_path(path):
        node = _find(nodes, name)
        if node is None:
            return None
        nodes = node.children
    return node


def iter_nodes(tree: list[FileNode]):
    """Depth-first, children in insertion order."""
    for node in tree:
        yield node
        if node.kind == NodeKind.FOLDER:
            yield from iter_nodes(node.children)


def flatten_files(tree: list[FileNode]) -> dict[str, str]:
    """{path: content} for every file in the tree."""
    return {n.path: n.content or "" for n in iter_nodes(tree) if n.kind == NodeKind.FILE}


def _project(node: FileNode) -> dict:
    if node.kind == NodeKind.FOLDER:
        return {"directory": {child.name: _project(child) for child in node.children}}
    return {"file": {"contents": node.content or ""}}


def to_mount_descriptor(tree: list[FileNode]) -> dict:
    """
    Nested sandbox mount shape, rooted at the project root:
      {name: {"directory": {...}}} or {name: {"file": {"contents": str}}}
    """
    return {node.name: _project(node) for node in tree}


def flatten_mount_descriptor(descriptor: dict, prefix: str = "") -> dict[str, str]:
    """Inverse walk of a mount descriptor into {path: contents}."""
    files = {}
    for name, entry in descriptor.items():
        path = f"{prefix}/{name}" if prefix else name
        if "directory" in entry:
            files.update(flatten_mount_descriptor(entry["directory"], path))
        else:
            files[path] = entry["file"]["contents"]
    return files
