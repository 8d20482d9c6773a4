"""
Workspace root resolution

Maps files to languages by extension and finds the directory a language
server should treat as the project boundary.
"""

import os

from lsp_constants import Language

LANGUAGE_EXTENSIONS: dict[Language, frozenset[str]] = {
    Language.TYPESCRIPT: frozenset(
        {".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts"}
    ),
    Language.PYTHON: frozenset({".py", ".pyi"}),
    Language.GO: frozenset({".go"}),
    Language.YAML: frozenset({".yaml", ".yml"}),
    Language.ASTRO: frozenset({".astro"}),
    Language.MARKDOWN: frozenset({".md", ".markdown"}),
}

# Ordered: earlier markers are checked first within one directory
ROOT_MARKERS: dict[Language, tuple[str, ...]] = {
    Language.TYPESCRIPT: (
        "tsconfig.json",
        "jsconfig.json",
        "package.json",
        "package-lock.json",
        "bun.lockb",
        "bun.lock",
        "pnpm-lock.yaml",
        "yarn.lock",
    ),
    Language.PYTHON: (
        "pyproject.toml",
        "ty.toml",
        "setup.py",
        "setup.cfg",
        "requirements.txt",
        "Pipfile",
    ),
    Language.GO: ("go.work", "go.mod"),
    Language.YAML: (".git",),
    Language.ASTRO: (
        "astro.config.mjs",
        "astro.config.ts",
        "astro.config.js",
        "package.json",
    ),
    Language.MARKDOWN: (".marksman.toml", ".git"),
}

# LSP languageId for textDocument/didOpen
LANGUAGE_IDS: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".js": "javascript",
    ".jsx": "javascriptreact",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".py": "python",
    ".pyi": "python",
    ".go": "go",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".astro": "astro",
    ".md": "markdown",
    ".markdown": "markdown",
}


def detect_language(path: str) -> Language | None:
    """Classify a file by extension; None if no server handles it."""
    extension = os.path.splitext(path)[1].lower()
    for language, extensions in LANGUAGE_EXTENSIONS.items():
        if extension in extensions:
            return language
    return None


def language_id_for(path: str) -> str:
    return LANGUAGE_IDS.get(os.path.splitext(path)[1].lower(), "plaintext")


def find_root(path: str, language: Language) -> str | None:
    """Find the nearest ancestor of ``path`` containing a marker for ``language``.

    The search starts at the file's parent directory and stops after the
    filesystem root. Returns None if no marker is found.
    """
    markers = ROOT_MARKERS.get(language, ())
    directory = os.path.dirname(os.path.abspath(path))
    while True:
        for marker in markers:
            if os.path.exists(os.path.join(directory, marker)):
                return directory
        parent = os.path.dirname(directory)
        if parent == directory:
            return None
        directory = parent
