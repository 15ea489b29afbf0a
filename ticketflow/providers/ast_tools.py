"""Structured Python source edits built on the stdlib ``ast`` module."""

from __future__ import annotations

import ast
import logging
import textwrap
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

FunctionNode = Union[ast.FunctionDef, ast.AsyncFunctionDef]

SKIPPED_DIRS = {".git", "node_modules", "vendor", "__pycache__", ".venv", "venv"}


class PythonAstEditor:
    """Edits Python files by locating definitions in the syntax tree.

    Methods return False (and leave the file untouched) when the file cannot
    be parsed or the definition is missing, so callers can fall back to a raw
    text edit.
    """

    def replace_function(self, file_path: Path, function_name: str, new_code: str) -> bool:
        """Replace a function or method definition.

        Args:
            file_path: Python file to edit
            function_name: ``name`` or ``Class.name``
            new_code: Full replacement definition, any indentation

        Returns:
            True if the definition was replaced
        """
        source = self._read(file_path)
        tree = self._parse(source, file_path)
        if tree is None:
            return False
        node = _find_function(tree, function_name)
        if node is None:
            logger.debug(f"{function_name} not found in {file_path}")
            return False

        lines = source.splitlines(keepends=True)
        start = min([node.lineno] + [d.lineno for d in node.decorator_list]) - 1
        end = node.end_lineno or node.lineno
        indent = lines[start][: len(lines[start]) - len(lines[start].lstrip())]
        replacement = textwrap.indent(textwrap.dedent(new_code).strip("\n"), indent) + "\n"

        Path(file_path).write_text("".join(lines[:start]) + replacement + "".join(lines[end:]), encoding="utf-8")
        logger.info(f"Replaced {function_name} in {file_path}")
        return True

    def add_import(self, file_path: Path, import_line: str) -> bool:
        """Insert an import after the module's existing imports.

        Returns:
            True if the line was added, False if already present or unparsable
        """
        source = self._read(file_path)
        import_line = import_line.strip()
        if any(line.strip() == import_line for line in source.splitlines()):
            return False
        tree = self._parse(source, file_path)
        if tree is None:
            return False

        insert_at = 0
        for index, stmt in enumerate(tree.body):
            if isinstance(stmt, (ast.Import, ast.ImportFrom)):
                insert_at = stmt.end_lineno or stmt.lineno
            elif index == 0 and _is_docstring(stmt):
                insert_at = stmt.end_lineno or stmt.lineno

        lines = source.splitlines(keepends=True)
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        lines.insert(insert_at, import_line + "\n")
        Path(file_path).write_text("".join(lines), encoding="utf-8")
        logger.info(f"Added '{import_line}' to {file_path}")
        return True

    def remove_return_annotation(self, file_path: Path, function_name: str) -> bool:
        """Drop the ``-> ...`` annotation of a function.

        Returns:
            True if an annotation was removed
        """
        source = self._read(file_path)
        tree = self._parse(source, file_path)
        if tree is None:
            return False
        node = _find_function(tree, function_name)
        if node is None or node.returns is None:
            return False

        offsets = _line_offsets(source)
        ann_start = offsets[node.returns.lineno - 1] + node.returns.col_offset
        ann_end = offsets[(node.returns.end_lineno or node.returns.lineno) - 1] + (
            node.returns.end_col_offset or 0
        )
        arrow = source.rfind("->", 0, ann_start)
        if arrow == -1:
            return False
        cut = arrow
        while cut > 0 and source[cut - 1] in " \t":
            cut -= 1

        Path(file_path).write_text(source[:cut] + source[ann_end:], encoding="utf-8")
        logger.info(f"Removed return annotation of {function_name} in {file_path}")
        return True

    def function_at_line(self, file_path: Path, line: int) -> Optional[str]:
        """Qualified name (``name`` or ``Class.name``) of the function spanning ``line``."""
        tree = self._parse(self._read(file_path), file_path)
        if tree is None:
            return None
        for stmt in tree.body:
            if isinstance(stmt, ast.ClassDef):
                for child in stmt.body:
                    if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)) and _spans(child, line):
                        return f"{stmt.name}.{child.name}"
            elif isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)) and _spans(stmt, line):
                return stmt.name
        return None

    def find_definition(self, workspace: Path, name: str) -> Optional[str]:
        """Find the module that defines a top-level class or function.

        Returns:
            Dotted module path relative to ``workspace``, or None
        """
        workspace = Path(workspace)
        for path in sorted(workspace.rglob("*.py")):
            relative = path.relative_to(workspace)
            if any(part in SKIPPED_DIRS for part in relative.parts):
                continue
            tree = self._parse(self._read(path), path, quiet=True)
            if tree is None:
                continue
            for stmt in tree.body:
                if isinstance(stmt, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)) and stmt.name == name:
                    parts = list(relative.with_suffix("").parts)
                    if parts[-1] == "__init__":
                        parts = parts[:-1]
                    if parts and parts[0] == "src":
                        parts = parts[1:]
                    return ".".join(parts) if parts else None
        return None

    def _read(self, file_path: Path) -> str:
        return Path(file_path).read_text(encoding="utf-8")

    def _parse(self, source: str, file_path: Path, quiet: bool = False) -> Optional[ast.Module]:
        try:
            return ast.parse(source, filename=str(file_path))
        except SyntaxError as e:
            if not quiet:
                logger.warning(f"Cannot parse {file_path}: {e}")
            return None


def _find_function(tree: ast.Module, qualified_name: str) -> Optional[FunctionNode]:
    class_name, _, function_name = qualified_name.rpartition(".")
    scopes: list[list[ast.stmt]] = []
    if class_name:
        scopes = [
            stmt.body
            for stmt in tree.body
            if isinstance(stmt, ast.ClassDef) and stmt.name == class_name
        ]
    else:
        scopes = [tree.body] + [stmt.body for stmt in tree.body if isinstance(stmt, ast.ClassDef)]

    for body in scopes:
        for stmt in body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)) and stmt.name == function_name:
                return stmt
    return None


def _is_docstring(stmt: ast.stmt) -> bool:
    return (
        isinstance(stmt, ast.Expr)
        and isinstance(stmt.value, ast.Constant)
        and isinstance(stmt.value.value, str)
    )


def _line_offsets(source: str) -> list[int]:
    offsets = [0]
    for line in source.splitlines(keepends=True):
        offsets.append(offsets[-1] + len(line))
    return offsets


def _spans(node: FunctionNode, line: int) -> bool:
    return node.lineno <= line <= (node.end_lineno or node.lineno)
