"""
Artifact parser: turns the service's semi-structured response into an ordered
list of Steps.

Accepted dialects:
  <artifact ...><action type="file" path="...">...</action></artifact>
  <boltArtifact ...><boltAction type="file" filePath="...">...</boltAction></boltArtifact>

When no container is present at all, markdown code blocks are used instead
(see FencedCodeParser).

Never raises. Malformed input degrades to whatever actions can still be found,
possibly none; callers treat an empty list as "nothing usable was produced".
"""

import re

from sitegen.models import Step, StepKind, StepStatus


_OPEN_RE = re.compile(r"<(artifact|boltArtifact)\b[^>]*>", re.IGNORECASE)
_ACTION_RE = re.compile(r"<(action|boltAction)\b([^>]*)>(.*?)</\1\s*>", re.IGNORECASE | re.DOTALL)
_ATTR_RE = re.compile(r"""([\w-]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_FENCE_RE = re.compile(r"^```[\w.+-]*[ \t]*\n(.*?)\n?```$", re.DOTALL)
_BLOCK_RE = re.compile(r"```([\w.+-]*)[ \t]*\n(.*?)```", re.DOTALL)
_FILENAME_RE = re.compile(
    r"^\s*(?://|#|/\*|<!--)\s*(?:filename|file)\s*:\s*(\S+?)\s*(?:\*/|-->)?\s*$",
    re.IGNORECASE,
)
_DOCUMENT_RE = re.compile(r"<!DOCTYPE html>.*?</html>", re.IGNORECASE | re.DOTALL)

_DEFAULT_FILES = {
    "html": "index.html",
    "css": "style.css",
    "javascript": "script.js",
    "js": "script.js",
}

_KIND_BY_TYPE = {
    "file": StepKind.CREATE_FILE,
    "shell": StepKind.RUN_COMMAND,
}

SYNTHETIC_OPEN = '<artifact id="implementation-steps" title="Implementation Steps">'


def _attributes(tag_body: str) -> dict:
    return {m.group(1).lower(): m.group(2) if m.group(2) is not None else m.group(3)
            for m in _ATTR_RE.finditer(tag_body)}


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text


def normalize(raw_text: str) -> str:
    """
    Reduce raw service output to a single artifact container.

    - container present: keep the first opening tag through its matching close
      (or through the end of the text when the close was cut off)
    - container absent: wrap the whole text in a synthetic container
    """
    raw_text = raw_text or ""
    opening = _OPEN_RE.search(raw_text)
    if not opening:
        return f"{SYNTHETIC_OPEN}\n{raw_text}\n</artifact>"

    tag = opening.group(1)
    close = re.compile(rf"</{tag}\s*>", re.IGNORECASE).search(raw_text, opening.end())
    end = close.end() if close else len(raw_text)
    return raw_text[opening.start():end]


def parse_artifact_title(raw_text: str) -> str | None:
    opening = _OPEN_RE.search(raw_text or "")
    if not opening:
        return None
    return _attributes(opening.group(0)).get("title")


class RegexArtifactParser:
    """Lenient scanner: every well-formed action entry in the container becomes a Step."""

    def parse(self, raw_text: str, start_id: int = 1) -> list[Step]:
        container = normalize(raw_text)
        steps = []
        next_id = start_id

        for m in _ACTION_RE.finditer(container):
            attrs = _attributes(m.group(2))
            kind = _KIND_BY_TYPE.get((attrs.get("type") or "").strip().lower())
            if kind is None:
                continue

            path = None
            if kind == StepKind.CREATE_FILE:
                path = (attrs.get("path") or attrs.get("filepath") or "").strip()
                if not path:
                    print("  [parse] Skipping file action without a path")
                    continue

            steps.append(Step(
                id=next_id,
                kind=kind,
                path=path,
                content=_strip_code_fence(m.group(3)),
                status=StepStatus.PENDING,
            ))
            next_id += 1

        if not steps:
            print("  [parse] No usable actions in response")
        return steps


class FencedCodeParser:
    """
    Recovers files from markdown code blocks when the response has no artifact.

    A block whose first line names a file (`// filename: routes/api.js`,
    `/* file: styles/main.css */`, `<!-- filename: about.html -->`) is written to
    that path. Unnamed html, css and js blocks fill index.html, style.css and
    script.js, first block of each language only. A bare <!DOCTYPE html> document
    stands in for index.html when no block provides one.
    """

    def parse(self, raw_text: str, start_id: int = 1) -> list[Step]:
        raw_text = raw_text or ""
        files: dict[str, str] = {}

        for m in _BLOCK_RE.finditer(raw_text):
            lang = m.group(1).lower()
            body = m.group(2)
            first_line, _, rest = body.partition("\n")
            named = _FILENAME_RE.match(first_line)
            if named:
                path, content = named.group(1), rest
            else:
                path, content = _DEFAULT_FILES.get(lang), body
                if path is None or path in files:
                    continue
            content = content.strip()
            if content:
                files[path] = content

        if "index.html" not in files:
            document = _DOCUMENT_RE.search(raw_text)
            if document:
                files["index.html"] = document.group(0).strip()

        if files:
            print(f"  [parse] Recovered {len(files)} file(s) from code blocks")
        return [
            Step(id=i, kind=StepKind.CREATE_FILE, path=path, content=content, status=StepStatus.PENDING)
            for i, (path, content) in enumerate(files.items(), start_id)
        ]


_default_parser = RegexArtifactParser()
_fallback_parser = FencedCodeParser()


def parse(raw_text: str, start_id: int = 1) -> list[Step]:
    """Artifact actions first; code blocks only when no artifact container was produced."""
    try:
        steps = _default_parser.parse(raw_text, start_id=start_id)
        if not steps and not _OPEN_RE.search(raw_text or ""):
            steps = _fallback_parser.parse(raw_text, start_id=start_id)
        return steps
    except Exception as e:
        print(f"  [parse] Degraded to empty plan: {e}")
        return []
