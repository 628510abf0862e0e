"""
Deployment engine: drives a run through an explicit, ordered list of phases.

Each phase either succeeds or raises a ``DeployError``; the engine tags the
error with the phase name, records it on the run and stops at the first fatal
failure. Phases never overlap and are never retried.
"""

import logging
import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence

from .artifact import locate
from .backup import BackupManager
from .config import DeploySettings
from .errors import (
    DeployError, HealthCheckFailed, NoBackupAvailable, NotificationFailed,
    ServiceStartFailed, TargetDirMissing, ToolMissing,
)
from .events import emit_event, EventTypes
from .health import HealthVerifier
from .lock import DeploymentLock
from .models import Artifact, BackupRecord, DeploymentRun, PhaseStatus, RunKind, RunOutcome
from .notify import Notifier
from .report import ReportGenerator, write_deployment_info
from .rollback import RollbackController
from .service import ServiceManager, generate_systemd_unit
from .session import Session, connect
from .state import create_run_dir

logger = logging.getLogger(__name__)


class Phases:
    CHECKING_PREREQUISITES = "CheckingPrerequisites"
    PREFLIGHT_CHECKS = "PreflightChecks"
    BACKING_UP = "BackingUp"
    DEPLOYING = "Deploying"
    STARTING_SERVICES = "StartingServices"
    HEALTH_CHECKING = "HealthChecking"
    POST_TASKS = "PostTasks"
    ROLLING_BACK = "RollingBack"


DEPLOY_ORDER = [
    Phases.CHECKING_PREREQUISITES,
    Phases.PREFLIGHT_CHECKS,
    Phases.BACKING_UP,
    Phases.DEPLOYING,
    Phases.STARTING_SERVICES,
    Phases.HEALTH_CHECKING,
    Phases.POST_TASKS,
]

# Failures in these phases happen after the target was modified
ROLLBACK_TRIGGERS = {Phases.DEPLOYING, Phases.STARTING_SERVICES, Phases.HEALTH_CHECKING}


@dataclass
class Phase:
    """One named step of a run."""
    name: str
    func: Callable[["RunContext"], None]
    fatal: bool = True


@dataclass
class RunContext:
    run: DeploymentRun
    artifact: Optional[Artifact] = None
    session: Optional[Session] = None
    lock: Optional[DeploymentLock] = None
    backup: Optional[BackupRecord] = None
    verify_health: bool = False
    security_headers: dict = field(default_factory=dict)


class DeploymentEngine:
    """
    Orchestrates deployments, partial runs and rollbacks for one target.

    Collaborators are injectable so tests can replace the transport, the
    service manager and the HTTP probe.
    """

    def __init__(
        self,
        settings: DeploySettings,
        connector: Callable[..., Session] = connect,
        locator: Callable[[DeploySettings], Artifact] = locate,
        service_factory: Callable[[Session, str], ServiceManager] = ServiceManager,
        verifier: Optional[HealthVerifier] = None,
        notifier: Optional[Notifier] = None,
        reporter: Optional[ReportGenerator] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        sleep: Callable[[float], None] = time.sleep,
        run_log: bool = True,
    ):
        self.settings = settings
        self.connector = connector
        self.locator = locator
        self.service_factory = service_factory
        self.verifier = verifier or HealthVerifier(
            timeout=settings.health_timeout,
            slow_response_threshold=settings.slow_response_threshold,
            sleep=sleep,
        )
        self.notifier = notifier or Notifier(settings.slack_webhook_url)
        self.reporter = reporter or ReportGenerator(settings)
        self.which = which
        self.sleep = sleep
        self.run_log = run_log
        self.last_run: Optional[DeploymentRun] = None

    @property
    def target(self):
        return self.settings.target

    # Plans

    def phases_for(self, kind: RunKind) -> List[Phase]:
        table = {
            Phases.CHECKING_PREREQUISITES: Phase(Phases.CHECKING_PREREQUISITES, self._check_prerequisites),
            Phases.PREFLIGHT_CHECKS: Phase(Phases.PREFLIGHT_CHECKS, self._preflight_checks),
            Phases.BACKING_UP: Phase(Phases.BACKING_UP, self._back_up),
            Phases.DEPLOYING: Phase(Phases.DEPLOYING, self._deploy),
            Phases.STARTING_SERVICES: Phase(Phases.STARTING_SERVICES, self._start_services),
            Phases.HEALTH_CHECKING: Phase(Phases.HEALTH_CHECKING, self._health_check),
            Phases.POST_TASKS: Phase(Phases.POST_TASKS, self._post_tasks, fatal=False),
            Phases.ROLLING_BACK: Phase(Phases.ROLLING_BACK, self._roll_back),
        }
        plans = {
            RunKind.DEPLOY: DEPLOY_ORDER,
            RunKind.DEPLOY_ONLY: [Phases.CHECKING_PREREQUISITES, Phases.PREFLIGHT_CHECKS, Phases.DEPLOYING],
            RunKind.BACKUP_ONLY: [Phases.PREFLIGHT_CHECKS, Phases.BACKING_UP],
            RunKind.HEALTH_CHECK: [Phases.HEALTH_CHECKING],
            RunKind.ROLLBACK: [Phases.ROLLING_BACK],
        }
        return [table[name] for name in plans[kind]]

    def deploy(self, skip: Iterable[str] = ()) -> DeploymentRun:
        return self.execute(RunKind.DEPLOY, skip=skip)

    def deploy_only(self) -> DeploymentRun:
        return self.execute(RunKind.DEPLOY_ONLY)

    def backup_only(self) -> DeploymentRun:
        return self.execute(RunKind.BACKUP_ONLY)

    def health_check(self) -> DeploymentRun:
        return self.execute(RunKind.HEALTH_CHECK)

    def rollback(self, verify_health: Optional[bool] = None) -> DeploymentRun:
        if verify_health is None:
            verify_health = self.settings.verify_after_rollback
        return self.execute(RunKind.ROLLBACK, verify_health=verify_health)

    # Phase loop

    def execute(
        self,
        kind: RunKind,
        phases: Optional[Sequence[Phase]] = None,
        skip: Iterable[str] = (),
        verify_health: bool = False,
    ) -> DeploymentRun:
        """
        Run ``phases`` (default: the plan for ``kind``) strictly in order.

        Args:
            kind: Run kind, used for the default plan and the report
            phases: Explicit phase list, replaces the default plan
            skip: Phase names to record as skipped
            verify_health: Health-check after a rollback

        Returns:
            The finished DeploymentRun
        """
        phases = list(phases) if phases is not None else self.phases_for(kind)
        skip = set(skip)
        run = DeploymentRun.plan(kind, self.target, [p.name for p in phases])
        ctx = RunContext(run=run, verify_health=verify_health)
        self.last_run = run

        log_handler = self._attach_run_log(run)
        logger.info(f"Starting {kind.value} run {run.id} for {self.settings.project}")
        logger.info(f"Environment: {self.target.environment}, target host: {self.target.host}")
        self._emit(run, EventTypes.RUN_START, {"kind": kind.value, "target": self.target.to_dict()})

        outcome = RunOutcome.FAILED
        try:
            failure = self._run_phases(ctx, phases, skip)

            if failure is None:
                outcome = RunOutcome.SUCCESS
            elif self._should_auto_rollback(ctx, failure):
                outcome = self._auto_rollback(ctx)
            elif self.settings.auto_rollback and failure.phase in ROLLBACK_TRIGGERS:
                run.note("Auto-rollback skipped: no previous binary was backed up in this run")
        finally:
            self._finish(ctx, outcome)
            self._detach_run_log(log_handler)

        return run

    def _run_phases(self, ctx: RunContext, phases: List[Phase], skip: set) -> Optional[DeployError]:
        run = ctx.run
        for index, phase in enumerate(phases):
            if phase.name in skip:
                run.skip_phase(phase.name)
                self._emit(run, EventTypes.PHASE_SKIP, {"phase": phase.name})
                continue

            run.start_phase(phase.name)
            self._emit(run, EventTypes.PHASE_START, {"phase": phase.name})
            logger.info(f"▶ {phase.name}")

            try:
                phase.func(ctx)
            except KeyboardInterrupt:
                run.fail_phase(phase.name, "interrupted by operator")
                self._skip_rest(run, phases[index + 1:])
                logger.error(f"[{phase.name}] Interrupted, leaving the target as-is")
                raise
            except DeployError as e:
                error = e
            except Exception as e:
                logger.exception(f"Unexpected error in {phase.name}")
                error = DeployError(f"Unexpected error: {e}")
            else:
                run.succeed_phase(phase.name)
                self._emit(run, EventTypes.PHASE_OK, {"phase": phase.name})
                continue

            error.phase = phase.name
            run.fail_phase(phase.name, f"{error.kind}: {error.message}")
            self._emit(run, EventTypes.PHASE_FAIL, {
                "phase": phase.name,
                "error": error.kind,
                "message": error.message,
                "details": error.details,
            })

            if phase.fatal and error.fatal:
                logger.error(str(error))
                self._skip_rest(run, phases[index + 1:])
                return error
            logger.warning(f"{error} (non-fatal, continuing)")

        return None

    def _skip_rest(self, run: DeploymentRun, phases: List[Phase]) -> None:
        for phase in phases:
            if run.phase(phase.name).status == PhaseStatus.PENDING:
                run.skip_phase(phase.name)

    def _should_auto_rollback(self, ctx: RunContext, failure: DeployError) -> bool:
        return (
            self.settings.auto_rollback
            and failure.phase in ROLLBACK_TRIGGERS
            and ctx.backup is not None
            and ctx.backup.has_binary
        )

    def _auto_rollback(self, ctx: RunContext) -> RunOutcome:
        run = ctx.run
        logger.warning("Auto-rollback configured, rolling back to the pre-deploy backup")
        run.add_phase(Phases.ROLLING_BACK)
        run.start_phase(Phases.ROLLING_BACK)
        self._emit(run, EventTypes.PHASE_START, {"phase": Phases.ROLLING_BACK})
        ctx.verify_health = self.settings.verify_after_rollback
        try:
            self._roll_back(ctx)
        except KeyboardInterrupt:
            run.fail_phase(Phases.ROLLING_BACK, "interrupted by operator")
            logger.error(f"[{Phases.ROLLING_BACK}] Interrupted, leaving the target as-is")
            raise
        except DeployError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error in {Phases.ROLLING_BACK}")
            error = DeployError(f"Unexpected error: {e}")
        else:
            run.succeed_phase(Phases.ROLLING_BACK)
            self._emit(run, EventTypes.PHASE_OK, {"phase": Phases.ROLLING_BACK})
            return RunOutcome.ROLLED_BACK

        error.phase = Phases.ROLLING_BACK
        run.fail_phase(Phases.ROLLING_BACK, f"{error.kind}: {error.message}")
        self._emit(run, EventTypes.PHASE_FAIL, {
            "phase": Phases.ROLLING_BACK,
            "error": error.kind,
            "message": error.message,
        })
        logger.error(str(error))
        return RunOutcome.FAILED

    def _finish(self, ctx: RunContext, outcome: RunOutcome) -> None:
        run = ctx.run
        if ctx.lock is not None:
            try:
                ctx.lock.release()
            except DeployError as e:
                logger.warning(f"Could not release deployment lock: {e}")
        if ctx.session is not None:
            ctx.session.close()

        run.finish(outcome)
        self.reporter.write(run)
        self._emit(run, EventTypes.RUN_DONE, {"outcome": outcome.value})
        if outcome == RunOutcome.SUCCESS:
            logger.info(f"{run.kind.value} run {run.id} completed successfully")
        else:
            logger.error(f"{run.kind.value} run {run.id} finished with outcome {outcome.value}")

    # Collaborators

    def _session(self, ctx: RunContext) -> Session:
        if ctx.session is None:
            ctx.session = self.connector(
                self.target,
                timeout=self.settings.connect_timeout,
                command_timeout=self.settings.command_timeout,
            )
        return ctx.session

    def _service(self, ctx: RunContext) -> ServiceManager:
        return self.service_factory(self._session(ctx), self.settings.service_name)

    def _backups(self, ctx: RunContext) -> BackupManager:
        return BackupManager(self._session(ctx), self.target, self.settings.binary)

    def _acquire_lock(self, ctx: RunContext) -> None:
        if ctx.lock is None:
            ctx.lock = DeploymentLock(self._session(ctx), self.target.path, ctx.run.id)
        ctx.lock.acquire()

    # Phases

    def _check_prerequisites(self, ctx: RunContext) -> None:
        logger.info("Checking deployment prerequisites...")
        ctx.artifact = self.locator(self.settings)

        tools = [] if self.target.is_local else ["ssh", "scp"]
        if ctx.artifact.docs_dir and not self.target.is_local:
            tools.append("rsync")
        for tool in tools:
            if not self.which(tool):
                raise ToolMissing(tool, "local")

    def _preflight_checks(self, ctx: RunContext) -> None:
        logger.info("Running pre-deployment checks...")
        session = self._session(ctx)

        if not session.has_tool("systemctl"):
            raise ToolMissing("systemctl", self.target.host)

        path = self.target.path
        if not session.is_dir(path):
            logger.warning(str(TargetDirMissing(path)))
            session.ensure_dir(path, owner=self.target.user)
            ctx.run.note(f"Created target directory {path}")
            logger.info(f"Created target directory {path}")

        self._acquire_lock(ctx)

        with ThreadPoolExecutor(max_workers=2) as pool:
            disk = pool.submit(session.disk_free_mb, path)
            memory = pool.submit(session.memory_info)
            free_mb = disk.result()
            memory_text = memory.result()

        if free_mb is not None:
            logger.info(f"Available disk space: {free_mb} MB")
            minimum = self.settings.min_free_disk_mb
            if minimum and free_mb < minimum:
                logger.warning(f"Free disk space {free_mb} MB is below {minimum} MB")
                ctx.run.note(f"Low disk space on target: {free_mb} MB")
        if memory_text:
            logger.info(f"System resources:\n{memory_text}")

    def _back_up(self, ctx: RunContext) -> None:
        logger.info("Backing up existing deployment...")
        self._acquire_lock(ctx)
        record = self._backups(ctx).snapshot()
        ctx.backup = record
        ctx.run.backup_id = record.id
        self._emit(ctx.run, EventTypes.BACKUP_CREATED, record.to_dict())

    def _deploy(self, ctx: RunContext) -> None:
        logger.info(f"Deploying application to {self.target.environment} environment...")
        artifact = ctx.artifact or self.locator(self.settings)
        session = self._session(ctx)
        self._acquire_lock(ctx)

        root = self.target.path
        session.makedirs(f"{root}/bin", f"{root}/config", f"{root}/logs", f"{root}/data")

        logger.info("Deploying binary...")
        binary_path = self.settings.remote_binary_path
        session.copy(artifact.binary, binary_path)
        session.chmod_executable(binary_path)

        if artifact.config_files:
            logger.info("Deploying configuration...")
        for config_file in artifact.config_files:
            session.copy(config_file, f"{root}/config/{os.path.basename(config_file)}")

        if artifact.docs_dir:
            logger.info("Deploying documentation...")
            session.sync_dir(artifact.docs_dir, f"{root}/docs")

        logger.info("Deploying systemd service...")
        environment = {"GGEN_ENV": self.target.environment}
        environment.update(self.settings.service_env)
        unit = generate_systemd_unit(
            service=self.settings.service_name,
            exec_start=binary_path,
            working_directory=root,
            user=self.settings.service_user or self.target.user,
            environment=environment,
        )
        self._service(ctx).install_unit(unit)

    def _start_services(self, ctx: RunContext) -> None:
        logger.info("Starting services...")
        service = self._service(ctx)

        if service.is_active():
            logger.info("Stopping existing service...")
            service.stop()

        service.start()
        service.enable()

        if not service.wait_active(self.settings.start_wait):
            raise ServiceStartFailed(service.name, service.status())
        logger.info("Service started successfully")

    def _health_check(self, ctx: RunContext) -> None:
        logger.info("Running health checks...")
        run = ctx.run
        service = self._service(ctx)
        if not service.is_active():
            raise HealthCheckFailed(self.target.health_url, 0, reason=f"service {service.name} is not running")

        self.verifier.on_attempt = lambda result: self._emit(run, EventTypes.HEALTH_ATTEMPT, result.to_dict())
        try:
            results = self.verifier.verify(
                self.target.health_url,
                self.settings.health_max_attempts,
                self.settings.health_interval,
            )
        except HealthCheckFailed as e:
            run.add_health_results(e.results)
            raise
        run.add_health_results(results)

        run.metrics_result = self.verifier.probe_metrics(self.target.metrics_url)
        if not run.metrics_result.success:
            run.note("Metrics endpoint is not accessible")

        if self.settings.check_security_headers:
            ctx.security_headers = self.verifier.probe_security_headers(self.target.health_url)
            missing = [name for name, present in ctx.security_headers.items() if not present]
            if missing:
                run.note(f"Missing security headers: {', '.join(missing)}")

        if self.settings.load_check_requests > 0:
            load = self.verifier.check_under_load(self.target.health_url, self.settings.load_check_requests)
            self._emit(run, EventTypes.LOAD_CHECK, load.to_dict())
            if load.failed:
                run.note(f"Load test: {load.failed} of {load.total} concurrent health requests failed")

    def _post_tasks(self, ctx: RunContext) -> None:
        logger.info("Running post-deployment tasks...")
        run = ctx.run

        try:
            removed = self._backups(ctx).prune(self.settings.keep_backups)
            if removed:
                self._emit(run, EventTypes.BACKUP_PRUNED, {"removed": removed})
        except DeployError as e:
            logger.warning(f"Cleaning up old backups failed: {e}")
            run.note(f"Backup pruning failed: {e.message}")

        try:
            status = "active" if self._service(ctx).is_active() else "inactive"
            write_deployment_info(self._session(ctx), self.settings, status)
        except DeployError as e:
            logger.warning(f"Updating deployment info failed: {e}")
            run.note(f"deployment-info.json not updated: {e.message}")

        text = f"✅ {self.settings.project} deployed to {self.target.environment} environment successfully!"
        try:
            self.notifier.notify(text)
        except NotificationFailed as e:
            logger.warning(f"Deployment notification failed: {e.message}")
            self._emit(run, EventTypes.NOTIFY_FAIL, {"message": e.message})
            run.note(f"Notification failed: {e.message}")

    def _roll_back(self, ctx: RunContext) -> None:
        session = self._session(ctx)
        if not session.is_dir(self.target.path):
            raise NoBackupAvailable(self.target.path, "deploy path does not exist")
        self._acquire_lock(ctx)

        self._emit(ctx.run, EventTypes.ROLLBACK_START, {})
        controller = RollbackController(
            backups=self._backups(ctx),
            service=self._service(ctx),
            start_wait=self.settings.start_wait,
            verifier=self.verifier,
            health_url=self.target.health_url,
            health_max_attempts=self.settings.health_max_attempts,
            health_interval=self.settings.health_interval,
        )
        result = controller.rollback(verify_health=ctx.verify_health)
        ctx.run.backup_id = result.backup.id
        ctx.run.add_health_results(result.health_results)
        self._emit(ctx.run, EventTypes.ROLLBACK_DONE, {"backup_id": result.backup.id})

    # Bookkeeping

    def _emit(self, run: DeploymentRun, event_type: str, data: dict) -> None:
        try:
            emit_event(run.id, event_type, data, self.settings.state_home)
        except OSError as e:
            logger.debug(f"Could not write event {event_type}: {e}")

    def _attach_run_log(self, run: DeploymentRun) -> Optional[logging.Handler]:
        if not self.run_log:
            return None
        try:
            log_path = create_run_dir(run.id, self.settings.state_home) / "deployment.log"
            handler = logging.FileHandler(log_path)
        except OSError as e:
            logger.warning(f"Run log unavailable: {e}")
            return None
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logging.getLogger("deployctl").addHandler(handler)
        return handler

    def _detach_run_log(self, handler: Optional[logging.Handler]) -> None:
        if handler is None:
            return
        logging.getLogger("deployctl").removeHandler(handler)
        handler.close()
