"""
Monthly API budget enforcement.

Spend is the sum of `cost_usd` over the API usage ledger for the current
calendar month (`YYYY-MM`). There is no rollover and no prorating.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Optional, Any

from .error_tracker import BudgetExceeded
from .logging_manager import get_logger
from .models import ApiBudgetSettings, ApiOperation, ApiService, ApiUsageRecord
from .repository import DirectoryRepository

logger = get_logger(__name__)


def month_key(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m')


@dataclass
class BudgetUsage:
    used_usd: float
    limit_usd: float
    percent_used: int


@dataclass
class BudgetCheck:
    allowed: bool
    usage: BudgetUsage
    reason: Optional[str] = None


class BudgetGuard:
    """
    Gates syncs on the monthly spend ceiling and records what each sync cost.
    """

    def __init__(self, repository: DirectoryRepository, default_settings: Optional[ApiBudgetSettings] = None,
                 clock=None):
        self.repository = repository
        self.default_settings = default_settings or ApiBudgetSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def settings(self) -> ApiBudgetSettings:
        return self.repository.get_budget_settings() or self.default_settings

    def update_settings(self, monthly_limit_usd: Optional[float] = None,
                        alert_threshold_percent: Optional[int] = None,
                        pause_on_exhausted: Optional[bool] = None) -> ApiBudgetSettings:
        """Update the stored budget settings; unspecified fields keep their current value."""
        current = self.settings()
        updates = {
            'monthly_limit_usd': monthly_limit_usd,
            'alert_threshold_percent': alert_threshold_percent,
            'pause_on_exhausted': pause_on_exhausted,
        }
        data = current.model_dump()
        data.update({k: v for k, v in updates.items() if v is not None})
        settings = ApiBudgetSettings(**data)
        self.repository.save_budget_settings(settings)
        logger.info("Budget settings updated", extra={'details': settings.model_dump()})
        return settings

    def _usage(self, settings: ApiBudgetSettings):
        key = month_key(self._clock())
        monthly = self.repository.get_monthly_usage(key)
        limit = settings.monthly_limit_usd
        percent = round(monthly.cost_usd / limit * 100) if limit > 0 else 0
        return key, monthly, BudgetUsage(used_usd=monthly.cost_usd, limit_usd=limit, percent_used=percent)

    def check_allowed(self) -> BudgetCheck:
        """Whether another sync may spend money this month."""
        settings = self.settings()
        _, _, usage = self._usage(settings)

        if settings.pause_on_exhausted and usage.used_usd >= usage.limit_usd:
            reason = f"Monthly budget exhausted (${usage.used_usd:.2f} / ${usage.limit_usd:.2f})"
            logger.warning(reason, extra={'details': asdict(usage)})
            return BudgetCheck(allowed=False, usage=usage, reason=reason)

        if usage.percent_used >= settings.alert_threshold_percent:
            logger.warning(f"Budget usage at {usage.percent_used}% of monthly limit",
                           extra={'details': asdict(usage)})
        return BudgetCheck(allowed=True, usage=usage)

    def ensure_allowed(self, institution_id: Optional[str] = None) -> BudgetUsage:
        """
        Raises:
            BudgetExceeded: the budget is exhausted and syncs are paused.
        """
        check = self.check_allowed()
        if not check.allowed:
            raise BudgetExceeded(check.reason, usage=check.usage, institution_id=institution_id)
        return check.usage

    def status(self) -> Dict[str, Any]:
        settings = self.settings()
        key, monthly, usage = self._usage(settings)
        return {
            'month_key': key,
            'monthly_limit_usd': usage.limit_usd,
            'used_usd': round(usage.used_usd, 3),
            'remaining_usd': round(max(0.0, usage.limit_usd - usage.used_usd), 3),
            'percent_used': usage.percent_used,
            'is_exhausted': usage.used_usd >= usage.limit_usd,
            'is_warning': usage.percent_used >= settings.alert_threshold_percent,
            'sync_count': monthly.sync_count,
            'tokens_used': monthly.tokens_used,
        }

    def record(self, tokens_used: int, cost_usd: float, institution_id: Optional[str] = None,
               operation: ApiOperation = ApiOperation.INSTITUTION_SYNC) -> None:
        """
        Append a usage record to the ledger.

        Never raises; persistence errors are logged and dropped.
        """
        record = ApiUsageRecord(
            service=ApiService.OPENAI,
            operation=operation,
            institution_id=institution_id,
            tokens_used=tokens_used,
            cost_usd=cost_usd,
            month_key=month_key(self._clock()),
        )
        try:
            self.repository.add_api_usage(record)
            logger.info("Recorded API usage", extra={'details': {
                'institution_id': institution_id, 'tokens_used': tokens_used, 'cost_usd': cost_usd
            }})
        except Exception as e:
            logger.error(f"Failed to record API usage: {e}", extra={'details': {
                'institution_id': institution_id, 'tokens_used': tokens_used, 'cost_usd': cost_usd
            }})
