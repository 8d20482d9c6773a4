"""
Server registry

Decides which language servers to query for a language in a workspace.
"""

import logging
import os

from lsp_constants import Language, ServerId

logger = logging.getLogger(__name__)

OXLINT_CONFIG_MARKERS = (".oxlintrc.json", "oxlint.json", "oxlintrc.json")
ESLINT_CONFIG_MARKERS = (
    "eslint.config.js",
    "eslint.config.mjs",
    "eslint.config.cjs",
    "eslint.config.ts",
    "eslint.config.mts",
    "eslint.config.cts",
    ".eslintrc",
    ".eslintrc.js",
    ".eslintrc.cjs",
    ".eslintrc.json",
    ".eslintrc.yml",
    ".eslintrc.yaml",
)

SINGLE_SERVER_LANGUAGES: dict[Language, ServerId] = {
    Language.PYTHON: ServerId.TY,
    Language.GO: ServerId.GOPLS,
    Language.YAML: ServerId.YAML,
    Language.ASTRO: ServerId.ASTRO,
    Language.MARKDOWN: ServerId.MARKSMAN,
}


def _has_marker(root: str, markers: tuple[str, ...]) -> bool:
    return any(os.path.exists(os.path.join(root, marker)) for marker in markers)


def select_linter(root: str) -> ServerId | None:
    """Pick at most one linter for a TS/JS workspace.

    oxlint wins when its config is present, otherwise ESLint when its
    config is present; with neither, no linter runs.
    """
    if _has_marker(root, OXLINT_CONFIG_MARKERS):
        return ServerId.OXLINT
    if _has_marker(root, ESLINT_CONFIG_MARKERS):
        return ServerId.ESLINT
    return None


def servers_for_language(language: Language, root: str) -> list[ServerId]:
    """Return the ordered server identities to query for ``language``."""
    if language == Language.TYPESCRIPT:
        server_ids = [ServerId.TSSERVER]
        linter = select_linter(root)
        if linter is not None:
            server_ids.append(linter)
        logger.debug(f"Servers for {language.value} in {root}: {[s.value for s in server_ids]}")
        return server_ids

    server_id = SINGLE_SERVER_LANGUAGES.get(language)
    return [server_id] if server_id else []
