"""Repository profiling: languages, frameworks, tools and check commands."""

from __future__ import annotations

import json
import logging
import tomllib
from collections import Counter
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LANGUAGE_BY_SUFFIX = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".php": "php",
    ".rb": "ruby",
    ".rs": "rust",
    ".java": "java",
}

FRAMEWORK_MARKERS = {
    "django": "django",
    "flask": "flask",
    "fastapi": "fastapi",
    "typer": "typer",
    "react": "react",
    "next": "nextjs",
    "vue": "vue",
    "express": "express",
    "laravel/framework": "laravel",
    "github.com/gin-gonic/gin": "gin",
}

# "**" in a format command is replaced with the file being formatted.
DEFAULT_COMMANDS: dict[str, dict[str, str]] = {
    "python": {
        "test": "pytest",
        "lint": "ruff check .",
        "lint_fix": "ruff check --fix .",
        "format": "ruff format **",
        "typecheck": "mypy .",
    },
    "javascript": {
        "test": "npm test",
        "lint": "npm run lint",
        "lint_fix": "npx eslint --fix .",
        "format": "npx prettier --write **",
        "build": "npm run build",
    },
    "typescript": {
        "test": "npm test",
        "lint": "npm run lint",
        "lint_fix": "npx eslint --fix .",
        "format": "npx prettier --write **",
        "typecheck": "npx tsc --noEmit",
        "build": "npm run build",
    },
    "php": {
        "test": "./vendor/bin/phpunit",
        "lint": "./vendor/bin/pint --test",
        "lint_fix": "./vendor/bin/pint",
        "format": "./vendor/bin/pint **",
        "typecheck": "./vendor/bin/phpstan analyse",
    },
    "go": {
        "test": "go test ./...",
        "lint": "go vet ./...",
        "lint_fix": "gofmt -w .",
        "format": "gofmt -w **",
        "build": "go build ./...",
    },
    "rust": {
        "test": "cargo test",
        "lint": "cargo clippy",
        "format": "cargo fmt",
        "build": "cargo build",
    },
}

SKIPPED_DIRS = {".git", "node_modules", "vendor", "__pycache__", ".venv", "venv", "dist", "build"}


class RepoProfiler:
    """Builds the language profile persisted on a project."""

    def profile_repository(self, repo_path: Path) -> dict[str, Any]:
        """Inspect a checkout.

        Returns:
            ``{"languages", "primary_language", "frameworks", "tools",
            "commands", "manifests"}``
        """
        repo_path = Path(repo_path)
        languages = self._detect_languages(repo_path)
        primary = languages[0] if languages else None
        manifests = self._find_manifests(repo_path)
        dependencies = self._collect_dependencies(repo_path, manifests)
        frameworks = sorted(
            {name for marker, name in FRAMEWORK_MARKERS.items() if marker in dependencies}
        )
        tools = self._detect_tools(repo_path, dependencies)
        commands = self._resolve_commands(repo_path, primary, tools)

        profile = {
            "languages": languages,
            "primary_language": primary,
            "frameworks": frameworks,
            "tools": tools,
            "commands": commands,
            "manifests": manifests,
        }
        logger.info(
            f"Profiled {repo_path}: languages={languages} frameworks={frameworks} tools={tools}"
        )
        return profile

    def _detect_languages(self, repo_path: Path) -> list[str]:
        counts: Counter[str] = Counter()
        for path in repo_path.rglob("*"):
            if any(part in SKIPPED_DIRS for part in path.relative_to(repo_path).parts):
                continue
            language = LANGUAGE_BY_SUFFIX.get(path.suffix)
            if language and path.is_file():
                counts[language] += 1
        return [language for language, _ in counts.most_common()]

    def _find_manifests(self, repo_path: Path) -> list[str]:
        names = [
            "pyproject.toml",
            "requirements.txt",
            "setup.cfg",
            "package.json",
            "composer.json",
            "go.mod",
            "Cargo.toml",
            "Gemfile",
        ]
        return [name for name in names if (repo_path / name).is_file()]

    def _collect_dependencies(self, repo_path: Path, manifests: list[str]) -> set[str]:
        deps: set[str] = set()
        if "pyproject.toml" in manifests:
            try:
                with open(repo_path / "pyproject.toml", "rb") as f:
                    data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                logger.warning(f"Unreadable pyproject.toml: {e}")
                data = {}
            project = data.get("project", {})
            requirements = list(project.get("dependencies", []))
            for extra in project.get("optional-dependencies", {}).values():
                requirements.extend(extra)
            deps.update(_requirement_name(r) for r in requirements)
            deps.update(f"tool:{name}" for name in data.get("tool", {}))
        if "requirements.txt" in manifests:
            for line in (repo_path / "requirements.txt").read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if line and not line.startswith(("#", "-")):
                    deps.add(_requirement_name(line))
        for manifest, keys in (
            ("package.json", ("dependencies", "devDependencies")),
            ("composer.json", ("require", "require-dev")),
        ):
            if manifest in manifests:
                try:
                    data = json.loads((repo_path / manifest).read_text(encoding="utf-8"))
                except json.JSONDecodeError as e:
                    logger.warning(f"Unreadable {manifest}: {e}")
                    continue
                for key in keys:
                    deps.update(data.get(key, {}).keys())
                if manifest == "package.json":
                    deps.update(f"script:{name}" for name in data.get("scripts", {}))
        if "go.mod" in manifests:
            for line in (repo_path / "go.mod").read_text(encoding="utf-8").splitlines():
                parts = line.strip().split()
                if parts and "/" in parts[0]:
                    deps.add(parts[0])
        return deps

    def _detect_tools(self, repo_path: Path, deps: set[str]) -> list[str]:
        tools = set()
        markers = {
            "pytest": ["pytest.ini", "conftest.py", "tests/conftest.py"],
            "ruff": ["ruff.toml", ".ruff.toml"],
            "mypy": ["mypy.ini", ".mypy.ini"],
            "flake8": [".flake8"],
            "eslint": [".eslintrc", ".eslintrc.js", ".eslintrc.json", "eslint.config.js"],
            "prettier": [".prettierrc", ".prettierrc.json", "prettier.config.js"],
            "jest": ["jest.config.js", "jest.config.ts"],
            "tsc": ["tsconfig.json"],
            "phpunit": ["phpunit.xml", "phpunit.xml.dist"],
            "phpstan": ["phpstan.neon"],
            "pint": ["pint.json"],
        }
        for tool, files in markers.items():
            if any((repo_path / name).exists() for name in files):
                tools.add(tool)
        for tool in ("pytest", "ruff", "mypy", "black", "flake8", "eslint", "prettier", "jest"):
            if tool in deps or f"tool:{tool}" in deps:
                tools.add(tool)
        return sorted(tools)

    def _resolve_commands(self, repo_path: Path, language: str | None, tools: list[str]) -> dict[str, str]:
        commands = dict(DEFAULT_COMMANDS.get(language or "", {}))
        if language == "python":
            if "ruff" not in tools and "flake8" in tools:
                commands["lint"] = "flake8"
                commands.pop("lint_fix", None)
            if "ruff" not in tools and "black" in tools:
                commands["format"] = "black **"
            if "mypy" not in tools:
                commands.pop("typecheck", None)
            if "pytest" not in tools and not (repo_path / "tests").is_dir():
                commands.pop("test", None)
        if language in ("javascript", "typescript") and "jest" in tools:
            commands["test"] = "npx jest"
        return commands


def _requirement_name(requirement: str) -> str:
    name = requirement.split(";")[0].strip()
    for separator in ("[", "=", "<", ">", "!", "~", " "):
        name = name.split(separator)[0]
    return name.lower()


def auto_fix_commands(profile: dict[str, Any]) -> list[str]:
    """Whole-tree format and lint auto-fix commands for a language profile.

    Uses the profile's ``format`` and ``lint_fix`` commands, falling back to
    the defaults of each detected language.
    """
    commands: list[str] = []
    profile_commands = profile.get("commands") or {}
    sources = [profile_commands] if profile_commands.get("format") or profile_commands.get("lint_fix") else []
    sources += [DEFAULT_COMMANDS.get(language, {}) for language in profile.get("languages") or []]
    for source in sources:
        for key in ("format", "lint_fix"):
            command = source.get(key)
            if command:
                command = command.replace("**", ".")
                if command not in commands:
                    commands.append(command)
        if commands:
            break
    return commands
