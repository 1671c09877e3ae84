"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

_COMMON_PROPERTIES = {
    "config": {
        "type": "string",
        "description": "Path to the TOML config file (overrides auto-resolution). Auto-resolved from: $MULTIPULL_CONFIG env var → ~/.config/multipull/config.toml → ~/.multipullrc.toml",
    },
    "root": {
        "type": "string",
        "description": "Directory holding the repositories (overrides the config file)",
    },
    "repos": {
        "type": "string",
        "description": "Comma separated repository names under root (default: every git checkout under root)",
    },
    "json": {
        "type": "boolean",
        "description": "Output as JSON for machine parsing",
        "default": False,
    },
    "this": {
        "type": "boolean",
        "description": "Only process the repository containing the current directory",
        "default": False,
    },
}

_DRY_RUN = {
    "dry_run": {
        "type": "boolean",
        "description": "Report what would be done without changing any repository",
        "default": False,
    },
}

_TASK_RESULT = {
    "type": "object",
    "properties": {
        "repository": {"type": ["string", "null"]},
        "value": {},
        "error": {"type": ["string", "null"]},
        "elapsed_ms": {"type": "integer"},
    },
}

_REPORT_OUTPUT = {
    "type": "object",
    "properties": {
        "repositories": {"type": "array", "items": {"type": "string"}},
        "state": {
            "type": "string",
            "enum": ["idle", "running", "interrupted", "failed", "completed"],
        },
        "results": {
            "description": "One result per repository, or the single result of a last single stage (find-branch)",
            "oneOf": [
                {"type": "array", "items": _TASK_RESULT},
                _TASK_RESULT,
                {"type": "null"},
            ],
        },
        "error": {"type": ["string", "null"]},
        "elapsed_s": {"type": "number"},
    },
}


def _tool(name: str, description: str, extra: dict | None = None, required: list | None = None) -> dict:
    return {
        "name": name,
        "description": description,
        "inputSchema": {
            "type": "object",
            "properties": {**_COMMON_PROPERTIES, **(extra or {})},
            "required": required or [],
        },
        "outputSchema": _REPORT_OUTPUT,
    }


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    branch = {"branch": {"type": "string", "description": "Branch name to look for"}}
    return {
        "name": "multipull",
        "version": __version__,
        "description": "Keep a fleet of local git checkouts synchronized with their remotes and report their state in one pass. Uncommitted work is shelved in a temporary WIP commit while rebasing and restored afterwards; conflicts are reported, never forced.",
        "usage": "multipull <command> [options]",
        "tools": [
            _tool(
                "status",
                "Show branch, tracking, ahead/behind, stash count and dirty files of every repository, without fetching.",
            ),
            _tool(
                "pull",
                "Fetch every remote and bring each current branch up to date. Clean branches are pulled, dirty or ahead branches are rebased with their local changes preserved. Repositories whose merge would conflict are fetched only and flagged.",
                _DRY_RUN,
            ),
            _tool(
                "push",
                "Push current branches that are ahead of their remote, setting the upstream when missing. Branches behind their remote are skipped unless --force is given.",
                {
                    **_DRY_RUN,
                    "force": {
                        "type": "boolean",
                        "description": "Push with --force-with-lease branches behind their remote",
                        "default": False,
                    },
                },
            ),
            _tool(
                "checkout",
                "Check out a branch in every repository, falling back to the repository's default branch where it does not exist.",
                {
                    **_DRY_RUN,
                    **branch,
                    "existing": {
                        "type": "boolean",
                        "description": "Only touch repositories where origin/<branch> exists",
                        "default": False,
                    },
                },
            ),
            _tool(
                "find-branch",
                "List the repositories whose origin has the given branch.",
                branch,
                ["branch"],
            ),
            _tool(
                "rebase-branch",
                "Rebase current branches that are behind their default branch onto origin/<default>, keeping local changes. Rebases that would conflict are aborted and flagged.",
                _DRY_RUN,
            ),
            _tool(
                "merge-branch",
                "Merge the default branch into current branches that are behind it.",
                _DRY_RUN,
            ),
            _tool(
                "exec",
                "Run a shell command in every repository and collect its exit code and output.",
                {
                    "command": {"type": "string", "description": "Shell command to run"},
                    "match": {
                        "type": "string",
                        "description": "Only repositories whose name matches this regular expression",
                    },
                },
                ["command"],
            ),
        ],
    }
