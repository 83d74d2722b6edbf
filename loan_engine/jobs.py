"""
Scheduled Jobs

Entry points a scheduler (cron, APScheduler, a CLI) calls to run the loan
engine. Each job returns a JobResult and never raises for failures inside
the run; failures are collected as messages.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .lifecycle import LoanLifecycleEngine, SYSTEM_ERROR_ID
from .logging_config import log_action
from .organizations import OrganizationManager

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    job_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    processed_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def duration_ms(self) -> int:
        if self.end_time is None:
            return 0
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def finish(self) -> 'JobResult':
        self.end_time = datetime.now(timezone.utc)
        log_action(
            logger, "info" if self.success else "warning",
            f"Job {self.job_name} completed. Processed: {self.processed_count}, "
            f"Errors: {len(self.errors)}, Duration: {self.duration_ms}ms",
            action="job_completed",
            resource=self.job_name,
            extra={'processed_count': self.processed_count, 'error_count': len(self.errors)}
        )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_name': self.job_name,
            'success': self.success,
            'processed_count': self.processed_count,
            'errors': list(self.errors),
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_ms': self.duration_ms,
        }


def _format_loan_error(error: Dict[str, str], prefix: str = "") -> str:
    if error['loan_id'] == SYSTEM_ERROR_ID:
        return f"{prefix}System error: {error['error']}"
    return f"{prefix}Loan {error['loan_id']}: {error['error']}"


def run_loan_engine_job(engine: LoanLifecycleEngine, organization_manager: OrganizationManager,
                        now: Optional[datetime] = None) -> JobResult:
    """
    Run the loan engine for every active organization, one at a time

    Per-organization failures are recorded with the organization name and
    the job moves on. If the organizations cannot be listed the failure is
    recorded once and the job stops.
    """
    job = JobResult(job_name="loan-engine", start_time=datetime.now(timezone.utc))
    logger.info("Starting loan engine job")

    try:
        organizations = organization_manager.list_active_organizations()
    except Exception as e:
        logger.exception(f"Loan engine job failed: {e}")
        job.errors.append(f"System error: {e}")
        return job.finish()

    logger.info(f"Found {len(organizations)} organizations to process")

    for organization in organizations:
        try:
            result = engine.process_loans(organization.id, now=now)
        except Exception as e:
            logger.error(f"Error processing organization {organization.name}: {e}")
            job.errors.append(f"[{organization.name}] {e}")
            continue

        job.processed_count += result.processed_count
        for error in result.errors:
            job.errors.append(_format_loan_error(error, prefix=f"[{organization.name}] "))
        for loan_result in result.results:
            logger.debug(
                f"{loan_result.loan_number}: {loan_result.previous_status.value} -> "
                f"{loan_result.new_status.value}"
            )
        logger.info(f"Processed {result.processed_count} loans for {organization.name}")

    return job.finish()


def run_loan_engine_for_organization(engine: LoanLifecycleEngine, organization_id: str,
                                     now: Optional[datetime] = None) -> JobResult:
    """Run the loan engine for a single organization"""
    job = JobResult(job_name=f"loan-engine-{organization_id}", start_time=datetime.now(timezone.utc))

    try:
        result = engine.process_loans(organization_id, now=now)
    except Exception as e:
        logger.exception(f"Loan engine failed for organization {organization_id}: {e}")
        job.errors.append(f"System error: {e}")
        return job.finish()

    job.processed_count = result.processed_count
    job.errors.extend(_format_loan_error(error) for error in result.errors)
    return job.finish()


def run_daily_summary_job(engine: LoanLifecycleEngine, organization_manager: OrganizationManager,
                          now: Optional[datetime] = None) -> JobResult:
    """Log engine statistics per active organization"""
    job = JobResult(job_name="daily-summary", start_time=datetime.now(timezone.utc))

    try:
        organizations = organization_manager.list_active_organizations()
    except Exception as e:
        logger.exception(f"Daily summary job failed: {e}")
        job.errors.append(f"System error: {e}")
        return job.finish()

    for organization in organizations:
        try:
            stats = engine.get_engine_statistics(organization.id, now=now)
        except Exception as e:
            job.errors.append(f"[{organization.name}] {e}")
            continue
        logger.info(f"Daily summary for {organization.name}",
                    extra={'extra': {'organization_id': organization.id, **stats.to_dict()}})
        job.processed_count += 1

    return job.finish()
