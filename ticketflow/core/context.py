"""Runtime context detection and wiring."""

import os
from functools import cached_property
from pathlib import Path
from typing import Optional

from ticketflow.core.config import Config
from ticketflow.providers.artifacts import LocalArtifactStore
from ticketflow.providers.ast_tools import PythonAstEditor
from ticketflow.providers.profiler import RepoProfiler
from ticketflow.providers.resolver import ProviderResolver
from ticketflow.workflow.failure_collector import FailureCollector
from ticketflow.workflow.git_operations import GitOperations
from ticketflow.workflow.policy import PolicyEnforcer
from ticketflow.workflow.queue import Dispatcher, JobQueue
from ticketflow.workflow.repair import RepairEngine
from ticketflow.workflow.repository import Repository
from ticketflow.workflow.stages import STAGES
from ticketflow.workflow.state_machine import WorkflowStateMachine
from ticketflow.workflow.store import RecordStore

DATA_DIR_NAME = ".ticketflow"


class RuntimeContext:
    """Wires records, queue, providers and the workflow core for one data directory.

    Attributes:
        cwd: Current working directory (invocation location)
        config: Loaded configuration
        data_dir: Directory holding records, queue, workspaces and artifacts
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        data_dir: Optional[Path] = None,
        cwd: Optional[Path] = None,
    ):
        """Initialize context, locating the data directory when not given.

        Args:
            config: Configuration (default: XDG config file)
            data_dir: Explicit data directory
            cwd: Working directory to start detection from (default: Path.cwd())
        """
        self.cwd = cwd or Path.cwd()
        self.config = config if config is not None else Config()
        self.data_dir = Path(data_dir) if data_dir else self._find_data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _find_data_dir(self) -> Path:
        """Locate the data directory.

        Order: TICKETFLOW_DATA_DIR, ``storage.data_dir`` from config, a
        ``.ticketflow/`` directory found walking up from cwd, then the XDG
        state directory.
        """
        env_dir = os.getenv("TICKETFLOW_DATA_DIR")
        if env_dir:
            return Path(env_dir).expanduser()

        configured = self.config.get("storage.data_dir")
        if configured:
            return Path(os.path.expanduser(configured))

        current = self.cwd
        while current != current.parent:
            candidate = current / DATA_DIR_NAME
            if candidate.is_dir():
                return candidate
            current = current.parent

        return Config.state_dir()

    @property
    def workspaces_root(self) -> Path:
        return self.data_dir / "workspaces"

    def workspace_for(self, ticket_id: int) -> Path:
        return self.workspaces_root / str(ticket_id) / "repo"

    def git_for(self, ticket_id: int) -> GitOperations:
        return GitOperations(self.workspace_for(ticket_id))

    @cached_property
    def store(self) -> RecordStore:
        return RecordStore(self.data_dir / "records")

    @cached_property
    def repository(self) -> Repository:
        return Repository(self.store)

    @cached_property
    def queue(self) -> JobQueue:
        return JobQueue(self.data_dir / "queue.json")

    @cached_property
    def dispatcher(self) -> Dispatcher:
        leases = {name: float(stage.timeout) for name, stage in STAGES.items()}
        return Dispatcher(self.queue, self.repository, leases=leases)

    @cached_property
    def artifacts(self) -> LocalArtifactStore:
        return LocalArtifactStore(self.data_dir)

    @cached_property
    def resolver(self) -> ProviderResolver:
        return ProviderResolver(self.config, self.data_dir)

    @cached_property
    def policies(self) -> dict:
        return self.config.policies()

    @cached_property
    def enforcer(self) -> PolicyEnforcer:
        return PolicyEnforcer(self.policies)

    @cached_property
    def profiler(self) -> RepoProfiler:
        return RepoProfiler()

    @cached_property
    def ast_editor(self) -> PythonAstEditor:
        return PythonAstEditor()

    @cached_property
    def machine(self) -> WorkflowStateMachine:
        return WorkflowStateMachine(
            self.repository,
            self.dispatcher,
            max_retries=int(self.config.get("workflow.max_validation_retries", 3)),
            stage_delay=float(self.config.get("workflow.stage_delay", 5)),
        )

    @cached_property
    def collector(self) -> FailureCollector:
        return FailureCollector(
            self.repository,
            self.artifacts,
            resolver=self.resolver,
            workspaces_root=self.workspaces_root,
            data_dir=self.data_dir,
        )

    @cached_property
    def repair_engine(self) -> RepairEngine:
        return RepairEngine(
            self.repository,
            self.machine,
            self.collector,
            self.resolver,
            self.workspaces_root,
            ast_editor=self.ast_editor,
        )

    @property
    def max_fix_iterations(self) -> int:
        return int(self.config.get("workflow.max_implementation_retries", 2))
