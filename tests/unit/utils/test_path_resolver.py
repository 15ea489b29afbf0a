"""Unit tests for CLI path resolution and log setup."""

import logging
import tempfile
from pathlib import Path

import pytest
from rich.console import Console
from rich.logging import RichHandler

from ticketflow.utils import PathResolutionError, configure_logging, resolve_file_argument


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestResolveFileArgument:
    """Tests for resolve_file_argument."""

    def test_existing_file(self, temp_dir):
        ticket = temp_dir / "DEMO-1.yaml"
        ticket.write_text("key: DEMO-1\n")

        assert resolve_file_argument(str(ticket)) == ticket

    def test_strips_line_number(self, temp_dir):
        ticket = temp_dir / "DEMO-1.yaml"
        ticket.write_text("key: DEMO-1\n")

        assert resolve_file_argument(f"{ticket}:12") == ticket

    def test_infers_single_ticket_in_directory(self, temp_dir):
        ticket = temp_dir / "DEMO-1.yml"
        ticket.write_text("key: DEMO-1\n")
        (temp_dir / "notes.txt").write_text("")

        assert resolve_file_argument(str(temp_dir)) == ticket

    def test_ambiguous_directory(self, temp_dir):
        (temp_dir / "a.yaml").write_text("")
        (temp_dir / "b.yaml").write_text("")

        with pytest.raises(PathResolutionError, match="ambiguous"):
            resolve_file_argument(str(temp_dir))

    def test_directory_without_tickets(self, temp_dir):
        with pytest.raises(PathResolutionError, match="no .yaml/.yml files"):
            resolve_file_argument(str(temp_dir))

    def test_missing_path(self, temp_dir):
        with pytest.raises(PathResolutionError, match="Ticket file not found"):
            resolve_file_argument(str(temp_dir / "missing.yaml"))


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_installs_single_rich_handler(self):
        console = Console(file=None, force_terminal=False)

        configure_logging(console=console)
        configure_logging(verbose=True, console=console)

        root = logging.getLogger("ticketflow")
        handlers = [h for h in root.handlers if isinstance(h, RichHandler)]
        assert len(handlers) == 1
        assert root.level == logging.DEBUG
        assert root.propagate is False

        for handler in handlers:
            root.removeHandler(handler)
        root.propagate = True
        root.setLevel(logging.NOTSET)
