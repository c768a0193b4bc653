"""
Usage recording for billable AI calls.

Called from the tail of the request pipeline. Recording is best-effort:
a metering failure is logged with enough context for manual
reconciliation and never reaches the user-facing request.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Optional, Union

from usage_meter.storage.latency_repository import LatencyRepository
from usage_meter.storage.models import CostBreakdown, FeatureType, LatencyRecord, UsageRecord
from usage_meter.storage.repository import UsageRepository

from .errors import TelemetryError, TelemetryResult
from .pricing import PriceCatalog, calculate_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Writes usage records and accrues each tenant's monthly cost."""

    def __init__(
        self,
        repository: UsageRepository,
        catalog: PriceCatalog,
        latency_repository: Optional[LatencyRepository] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the recorder.

        Args:
            repository: Usage ledger and budget storage
            catalog: Cached model price catalog
            latency_repository: Raw latency log storage (for ``record_latency``)
            clock: Source of record timestamps
        """
        self.repository = repository
        self.catalog = catalog
        self.latency_repository = latency_repository or LatencyRepository(repository.db_path)
        self._clock = clock

    def try_record_usage(
        self,
        tenant_id: str,
        provider: str,
        model_id: str,
        feature_type: Union[FeatureType, str],
        input_tokens: int,
        output_tokens: int,
        chatbot_id: Optional[str] = None,
        conversation_id: Optional[str] = None
    ) -> TelemetryResult[UsageRecord]:
        """Price a call and store it with its budget effect.

        A model missing from the catalog is billed at zero with a warning
        so that no event is lost. The record insert and the budget
        increment share one transaction.

        Returns:
            TelemetryResult holding the stored record or the failure
        """
        context = {
            "tenant_id": tenant_id,
            "provider": provider,
            "model_id": model_id,
            "feature_type": getattr(feature_type, "value", feature_type),
        }
        try:
            feature = FeatureType(feature_type)
            usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        except (TypeError, ValueError) as e:
            return TelemetryResult.failure(TelemetryError(f"Invalid usage event: {e}", context))

        try:
            price = self.catalog.get_price(provider, model_id)
        except Exception as e:
            return TelemetryResult.failure(
                TelemetryError(f"Price catalog unavailable: {e}", context)
            )

        if price is None:
            logger.warning(
                "Model price not found, recording usage at zero cost: %s:%s",
                provider, model_id,
            )
            cost = CostBreakdown.zero()
        else:
            cost = calculate_cost(usage, price)

        record = UsageRecord(
            timestamp=self._clock(),
            tenant_id=tenant_id,
            chatbot_id=chatbot_id,
            conversation_id=conversation_id,
            model_provider=provider,
            model_id=model_id,
            feature_type=feature,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cost=cost,
        )

        try:
            self.repository.insert_usage_record(record)
        except sqlite3.Error as e:
            return TelemetryResult.failure(
                TelemetryError(f"Failed to store usage record: {e}", context)
            )

        logger.debug(
            "Token usage tracked: tenant=%s model=%s:%s feature=%s tokens=%d cost=%.6f",
            tenant_id, provider, model_id, feature.value,
            usage.total_tokens, cost.total_cost,
        )
        return TelemetryResult.success(record)

    def record_usage(
        self,
        tenant_id: str,
        provider: str,
        model_id: str,
        feature_type: Union[FeatureType, str],
        input_tokens: int,
        output_tokens: int,
        chatbot_id: Optional[str] = None,
        conversation_id: Optional[str] = None
    ) -> None:
        """Record one billable call. Never raises; failures are logged."""
        try:
            result = self.try_record_usage(
                tenant_id=tenant_id,
                provider=provider,
                model_id=model_id,
                feature_type=feature_type,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                chatbot_id=chatbot_id,
                conversation_id=conversation_id,
            )
        except Exception:
            logger.error(
                "Failed to track token usage: tenant=%s model=%s:%s",
                tenant_id, provider, model_id,
                exc_info=True,
            )
            return
        if not result.ok:
            logger.error(
                "Failed to track token usage: %s (context=%s)",
                result.error, result.error.context,
            )

    def record_batch_usage(
        self,
        tenant_id: str,
        provider: str,
        model_id: str,
        feature_type: Union[FeatureType, str],
        total_tokens: int,
        chatbot_id: Optional[str] = None,
        conversation_id: Optional[str] = None
    ) -> None:
        """Record a call reported as a single token total, e.g. embeddings.

        The whole total is priced as input tokens.
        """
        self.record_usage(
            tenant_id=tenant_id,
            provider=provider,
            model_id=model_id,
            feature_type=feature_type,
            input_tokens=total_tokens,
            output_tokens=0,
            chatbot_id=chatbot_id,
            conversation_id=conversation_id,
        )

    def get_current_month_usage(self, tenant_id: str) -> float:
        """Return the tenant's accrued cost this month; 0.0 for new tenants."""
        return self.repository.get_current_month_usage(tenant_id)

    def reset_monthly_usage(self) -> int:
        """Zero every tenant's monthly counter (month-boundary job).

        Returns:
            Number of tenants reset

        Raises:
            sqlite3.Error: Propagated so the scheduler sees the failure
        """
        try:
            count = self.repository.reset_monthly_usage(self._clock())
        except sqlite3.Error:
            logger.error("Failed to reset monthly usage", exc_info=True)
            raise
        logger.info("Monthly usage reset completed: %d tenants", count)
        return count

    def try_record_latency(self, record: LatencyRecord) -> TelemetryResult[LatencyRecord]:
        try:
            self.latency_repository.insert_latency_record(record)
        except sqlite3.Error as e:
            return TelemetryResult.failure(TelemetryError(
                f"Failed to store latency record: {e}",
                {"tenant_id": record.tenant_id, "chatbot_id": record.chatbot_id},
            ))
        return TelemetryResult.success(record)

    def record_latency(
        self,
        tenant_id: str,
        channel: str,
        total_duration_ms: float,
        cache_hit: bool = False,
        chunks_used: int = 0,
        chatbot_id: Optional[str] = None,
        llm_duration_ms: Optional[float] = None,
        search_duration_ms: Optional[float] = None,
        rewrite_duration_ms: Optional[float] = None
    ) -> None:
        """Append one completed request's timings. Never raises."""
        try:
            record = LatencyRecord(
                timestamp=self._clock(),
                tenant_id=tenant_id,
                chatbot_id=chatbot_id,
                channel=channel,
                total_duration_ms=total_duration_ms,
                llm_duration_ms=llm_duration_ms,
                search_duration_ms=search_duration_ms,
                rewrite_duration_ms=rewrite_duration_ms,
                cache_hit=cache_hit,
                chunks_used=chunks_used,
            )
        except (TypeError, ValueError) as e:
            logger.error("Invalid latency record for tenant %s: %s", tenant_id, e)
            return

        try:
            result = self.try_record_latency(record)
        except Exception:
            logger.error("Failed to log response time for tenant %s", tenant_id, exc_info=True)
            return
        if not result.ok:
            logger.error(
                "Failed to log response time: %s (context=%s)",
                result.error, result.error.context,
            )
