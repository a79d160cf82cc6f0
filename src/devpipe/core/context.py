"""Engine context: everything the engine needs, built once and passed explicitly."""

from __future__ import annotations

import importlib
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from devpipe.config import Config
from devpipe.core.errors import DevpipeError
from devpipe.core.roles import RoleRegistry
from devpipe.core.workflow import WorkflowConfig, load_workflow
from devpipe.db.engine import AuditLog
from devpipe.db.models import Project
from devpipe.db.store import WorkerStateStore
from devpipe.integrations.runtime import ClaudeCliRuntime, SessionRuntime
from devpipe.integrations.slack import Notifier
from devpipe.integrations.tracker import ResilientTracker, TrackerProvider

logger = logging.getLogger(__name__)

TrackerFactory = Callable[[Project], TrackerProvider]
RuntimeFactory = Callable[[Project], SessionRuntime]


def load_object(path: str):
    """Import ``package.module:attribute``."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise DevpipeError(f"Expected 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise DevpipeError(f"{module_name} has no attribute {attr!r}") from e


def _no_tracker(project: Project) -> TrackerProvider:
    raise DevpipeError(
        f"No tracker configured for project '{project.slug}'. Set DEVPIPE_TRACKER=module:factory"
    )


@dataclass
class EngineContext:
    config: Config
    workflow: WorkflowConfig
    roles: RoleRegistry
    store: WorkerStateStore
    audit: AuditLog
    notifier: Notifier
    tracker_factory: TrackerFactory = _no_tracker
    runtime_factory: RuntimeFactory | None = None
    retry_sleep: Callable[[float], None] | None = None
    _trackers: dict[str, TrackerProvider] = field(default_factory=dict, repr=False)
    _runtimes: dict[str, SessionRuntime] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def tracker_for(self, project: Project) -> TrackerProvider:
        """Resilient tracker for a project, created once per project."""
        with self._lock:
            if project.slug not in self._trackers:
                self._trackers[project.slug] = ResilientTracker(
                    self.tracker_factory(project), sleep=self.retry_sleep
                )
            return self._trackers[project.slug]

    def runtime_for(self, project: Project) -> SessionRuntime:
        with self._lock:
            if project.slug not in self._runtimes:
                if self.runtime_factory is not None:
                    runtime = self.runtime_factory(project)
                else:
                    runtime = ClaudeCliRuntime(
                        output_dir=self.config.workspace_dir / "agent_outputs" / project.slug,
                        cwd=project.repo or None,
                    )
                self._runtimes[project.slug] = runtime
            return self._runtimes[project.slug]


def build_context(
    config: Config,
    tracker_factory: TrackerFactory | None = None,
    runtime_factory: RuntimeFactory | None = None,
    workflow: WorkflowConfig | None = None,
    retry_sleep: Callable[[float], None] | None = None,
) -> EngineContext:
    """Assemble an EngineContext from configuration.

    Factories given as arguments win over the import paths in the config.
    """
    roles = RoleRegistry()
    if workflow is None:
        workflow = load_workflow(config.workflow_path, known_roles=roles.ids())
    roles.max_workers_per_level = workflow.max_workers_per_level

    if tracker_factory is None and config.tracker_factory:
        tracker_factory = load_object(config.tracker_factory)
    if runtime_factory is None and config.runtime_factory:
        runtime_factory = load_object(config.runtime_factory)

    return EngineContext(
        config=config,
        workflow=workflow,
        roles=roles,
        store=WorkerStateStore(
            config.workspace_dir,
            lock_timeout=config.lock_timeout,
            lock_stale=config.lock_stale,
            lock_retry=config.lock_retry,
        ),
        audit=AuditLog(config.audit_db_path),
        notifier=Notifier(config.slack_bot_token),
        tracker_factory=tracker_factory or _no_tracker,
        runtime_factory=runtime_factory,
        retry_sleep=retry_sleep,
    )
