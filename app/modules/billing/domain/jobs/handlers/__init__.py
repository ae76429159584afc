"""Job handler registry keyed by `BackgroundJob.job_type`."""

from typing import Dict, Type

from app.models.background_job import JobType
from app.modules.billing.domain.jobs.handlers.base import BaseJobHandler
from app.modules.billing.domain.jobs.handlers.tax_recheck import TaxRecheckHandler

HANDLER_REGISTRY: Dict[str, Type[BaseJobHandler]] = {
    JobType.TAX_RECHECK.value: TaxRecheckHandler,
}


def get_handler_factory(job_type: str) -> Type[BaseJobHandler]:
    """Resolve the handler class for a job type; unknown types raise KeyError."""
    try:
        return HANDLER_REGISTRY[job_type]
    except KeyError:
        raise KeyError(f"No handler registered for job type: {job_type}") from None


__all__ = ["BaseJobHandler", "TaxRecheckHandler", "get_handler_factory"]
