"""
System prompt for website generation. Wording only; the one hard requirement is
that the service answers with an artifact the parser understands.
"""

from enum import Enum


ARTIFACT_FORMAT = """## Output Format
Respond with exactly ONE artifact containing every file of the project and any shell commands to run:

<artifact id="project" title="Short project title">
  <action type="file" path="index.html">
    ...complete file contents...
  </action>
  <action type="file" path="css/style.css">
    ...complete file contents...
  </action>
  <action type="shell">
    npm install some-package
  </action>
</artifact>

Rules:
- `path` is relative to the project root and uses forward slashes.
- Always write the COMPLETE file. A file you send again replaces the previous version.
- Actions are applied in the order you write them.
- No markdown fences around the artifact. No text outside it."""


GENERATE_SYSTEM_PROMPT = f"""You are an expert web developer who builds modern, responsive websites with HTML, CSS (Tailwind) and JavaScript.
Produce a complete project that runs when served as static files from the project root (an `index.html` at the root is required unless you also provide a `package.json` with a `dev` script).

{ARTIFACT_FORMAT}"""


FOLLOWUP_NOTE = """The project files you already produced are in the conversation above.
Apply the user's change by re-emitting only the files that change, each in full, inside a new artifact."""


# ---------------------------------------------------------------------------
# Project templates
# ---------------------------------------------------------------------------

class ProjectType(str, Enum):
    STATIC = "static"
    REACT = "react"
    NODE = "node"


_REACT_WORDS = ["react", "jsx", "vite", "single page application"]
_NODE_WORDS = ["node", "express", "server", "rest api", "endpoint", "backend"]


def detect_project_type(prompt: str) -> ProjectType:
    """Pick the base template for a new project. React wins over Node when both match."""
    text = (prompt or "").lower()
    if any(w in text for w in _REACT_WORDS):
        return ProjectType.REACT
    if any(w in text for w in _NODE_WORDS):
        return ProjectType.NODE
    return ProjectType.STATIC


REACT_BASE_PROMPT = """## Project Template: React
Build a React app with Vite. Include a root `package.json` whose `dev` script is
`vite --host 0.0.0.0 --port {port}`, plus `index.html`, `vite.config.js` and `src/main.jsx`.
List every package you import under `dependencies` or `devDependencies`."""


NODE_BASE_PROMPT = """## Project Template: Node
Build a Node.js (Express) app. Include a root `package.json` whose `dev` script starts the
server, and make the server listen on `process.env.PORT || {port}` at host 0.0.0.0.
Serve the front end from the same server (for example `express.static("public")`)."""


_BASE_PROMPTS = {
    ProjectType.REACT: REACT_BASE_PROMPT,
    ProjectType.NODE: NODE_BASE_PROMPT,
}


def system_prompt_for(project_type: ProjectType, port: int = 3000) -> str:
    base = _BASE_PROMPTS.get(project_type)
    if base is None:
        return GENERATE_SYSTEM_PROMPT
    return f"{GENERATE_SYSTEM_PROMPT}\n\n{base.format(port=port)}"
