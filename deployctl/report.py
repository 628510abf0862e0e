"""
Deployment reports: local audit record and remote deployment-info.json.
"""

import getpass
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import DeploySettings
from .models import DeploymentRun, PhaseStatus, isoformat, utc_now
from .session import Session
from .state import create_run_dir, write_run_json

logger = logging.getLogger(__name__)

STATUS_MARKS = {
    PhaseStatus.SUCCEEDED: "✅",
    PhaseStatus.FAILED: "❌",
    PhaseStatus.SKIPPED: "⏭️",
    PhaseStatus.PENDING: "⏳",
    PhaseStatus.RUNNING: "🔄",
}


@dataclass
class ReportHandle:
    json_path: Path
    markdown_path: Path


class ReportGenerator:
    """Serializes runs under the deployctl home directory."""

    def __init__(self, settings: DeploySettings):
        self.settings = settings

    def write(self, run: DeploymentRun) -> Optional[ReportHandle]:
        """
        Persist ``run`` as run.json and deployment-report.md.

        Never raises; a failed write is logged and None is returned.
        """
        try:
            json_path = write_run_json(run.id, run.to_dict(), self.settings.state_home)
            markdown_path = create_run_dir(run.id, self.settings.state_home) / "deployment-report.md"
            markdown_path.write_text(self.render_markdown(run))
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write deployment report for {run.id}: {e}")
            return None

        logger.info(f"Deployment report available in: {markdown_path}")
        return ReportHandle(json_path=json_path, markdown_path=markdown_path)

    def render_markdown(self, run: DeploymentRun) -> str:
        target = self.settings.target
        outcome = run.outcome.value.upper() if run.outcome else "IN PROGRESS"

        lines = [
            "# Deployment Report",
            "",
            f"**Project**: {self.settings.project}  ",
            f"**Run**: {run.id} ({run.kind.value})  ",
            f"**Environment**: {target.environment}  ",
            f"**Started**: {isoformat(run.started_at)}  ",
            f"**Finished**: {isoformat(run.ended_at) or '-'}  ",
            f"**Deployment Status**: {outcome}  ",
            "",
            "## Deployment Steps",
            "",
        ]

        for index, phase in enumerate(run.phases, 1):
            mark = STATUS_MARKS.get(phase.status, "")
            duration = f" ({phase.duration:.1f}s)" if phase.duration is not None else ""
            lines.append(f"{index}. {mark} {phase.name}{duration}")
            if phase.error:
                lines.append(f"   - Error: {phase.error}")

        lines += [
            "",
            "## Deployment Details",
            "",
            f"- **Target Host**: {target.host}",
            f"- **Deploy Path**: {target.path}",
            f"- **Service Name**: {self.settings.service_name}",
            f"- **Port**: {target.port}",
            f"- **User**: {target.user}",
            f"- **Backup**: {run.backup_id or 'none'}",
            "",
            "## Health Check Results",
            "",
            f"- **Health Endpoint**: {target.health_url}",
            f"- **Metrics Endpoint**: {target.metrics_url}",
        ]

        if run.health_results:
            last = run.health_results[-1]
            verdict = "passed" if last.success else "failed"
            lines.append(f"- **Health**: {verdict} after {len(run.health_results)} attempt(s), "
                         f"last latency {last.latency:.3f}s")
        if run.metrics_result is not None:
            lines.append(f"- **Metrics**: {'accessible' if run.metrics_result.success else 'not accessible'}")

        if run.notes:
            lines += ["", "## Notes", ""]
            lines += [f"- {note}" for note in run.notes]

        return "\n".join(lines) + "\n"


def deployment_info(settings: DeploySettings, service_status: str) -> dict:
    target = settings.target
    return {
        "project": settings.project,
        "environment": target.environment,
        "deployment_date": isoformat(utc_now()),
        "deployed_by": getpass.getuser(),
        "deploy_host": target.host,
        "deploy_path": target.path,
        "service_status": service_status,
    }


def write_deployment_info(session: Session, settings: DeploySettings, service_status: str) -> dict:
    """Overwrite <path>/deployment-info.json on the target."""
    info = deployment_info(settings, service_status)
    session.write_text(f"{settings.target.path}/deployment-info.json", json.dumps(info, indent=4) + "\n")
    logger.info("Updated deployment info")
    return info
