"""Unit tests for PythonAstEditor."""

import tempfile
from pathlib import Path

import pytest

from ticketflow.providers.ast_tools import PythonAstEditor

SOURCE = '''"""Greeting helpers."""

import os


class Greeter:
    def greet(self, name) -> str:
        return "hi " + name


@cache
def shout(name: str) -> str:
    return name.upper()
'''


@pytest.fixture
def module_file():
    """Temporary module with a class, a method and a decorated function."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "greet.py"
        path.write_text(SOURCE)
        yield path


class TestPythonAstEditor:
    """Tests for structured edits."""

    def test_replace_method_keeps_indentation(self, module_file):
        editor = PythonAstEditor()

        replaced = editor.replace_function(
            module_file, "Greeter.greet", "def greet(self, name):\n    return f'hello {name}'\n"
        )

        assert replaced
        assert "    def greet(self, name):\n        return f'hello {name}'\n" in module_file.read_text()

    def test_replace_function_includes_decorators(self, module_file):
        editor = PythonAstEditor()

        editor.replace_function(module_file, "shout", "def shout(name):\n    return name\n")

        text = module_file.read_text()
        assert "@cache" not in text
        assert text.endswith("def shout(name):\n    return name\n")

    def test_replace_missing_function_returns_false(self, module_file):
        assert not PythonAstEditor().replace_function(module_file, "nope", "def nope(): pass")
        assert module_file.read_text() == SOURCE

    def test_add_import_goes_after_existing_imports(self, module_file):
        editor = PythonAstEditor()

        assert editor.add_import(module_file, "from functools import cache")
        assert not editor.add_import(module_file, "from functools import cache")

        lines = module_file.read_text().splitlines()
        assert lines[2:4] == ["import os", "from functools import cache"]

    def test_add_import_after_docstring_when_no_imports(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "mod.py"
            path.write_text('"""Doc."""\nx = 1')

            PythonAstEditor().add_import(path, "import sys")

            assert path.read_text() == '"""Doc."""\nimport sys\nx = 1\n'

    def test_remove_return_annotation(self, module_file):
        editor = PythonAstEditor()

        assert editor.remove_return_annotation(module_file, "Greeter.greet")
        assert not editor.remove_return_annotation(module_file, "Greeter.greet")
        assert "    def greet(self, name):\n" in module_file.read_text()

    def test_function_at_line(self, module_file):
        editor = PythonAstEditor()

        assert editor.function_at_line(module_file, 8) == "Greeter.greet"
        assert editor.function_at_line(module_file, 13) == "shout"
        assert editor.function_at_line(module_file, 1) is None

    def test_unparsable_file_is_left_alone(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "broken.py"
            path.write_text("def broken(:\n")

            assert not PythonAstEditor().add_import(path, "import os")
            assert path.read_text() == "def broken(:\n"

    def test_find_definition_returns_dotted_module(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            workspace = Path(tmpdir)
            (workspace / "src" / "pkg").mkdir(parents=True)
            (workspace / "src" / "pkg" / "__init__.py").write_text("class Exported:\n    pass\n")
            (workspace / "src" / "pkg" / "models.py").write_text("class Order:\n    pass\n")
            (workspace / ".venv").mkdir()
            (workspace / ".venv" / "shadow.py").write_text("class Missing:\n    pass\n")

            editor = PythonAstEditor()

            assert editor.find_definition(workspace, "Order") == "pkg.models"
            assert editor.find_definition(workspace, "Exported") == "pkg"
            assert editor.find_definition(workspace, "Missing") is None
