"""Knowledge-base usage analytics.

While the kb_analytics_enabled system setting is "true", every retrieval that
produces context is recorded in kb_query_log: the (truncated) query, how many
chunks were found and used, their mean similarity, the source documents, the
embedding / search / total timings and the threshold in force. Admins read the
aggregates for the last N days.

Recording never affects the reply: storage errors are logged and dropped.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from wellness_kb.config import settings
from wellness_kb.db import SessionFactory, session_scope
from wellness_kb.models import KbQueryLog, SystemSetting
from wellness_kb.schemas import KbQueryUsage, KbUsageStats, SourceUsage

logger = logging.getLogger(__name__)

QUERY_TEXT_MAX_CHARS = 200
TOP_SOURCES = 5


class QueryAnalytics(Protocol):
    def record_query(self, usage: KbQueryUsage) -> bool:
        """Store one usage record if analytics are enabled; True when stored."""


class SqlQueryAnalytics:
    """Usage log and analytics toggle over SQLAlchemy sessions."""

    def __init__(self, session_factory: Optional[SessionFactory] = None, setting_key: Optional[str] = None):
        self._session_factory = session_factory
        self.setting_key = setting_key or settings.KB_ANALYTICS_SETTING_KEY

    def is_enabled(self) -> bool:
        with session_scope(self._session_factory) as db:
            row = db.get(SystemSetting, self.setting_key)
            raw = row.setting_value if row is not None else None
        if raw is None:
            return settings.KB_ANALYTICS_ENABLED
        return raw.strip().strip('"').lower() == "true"

    def set_enabled(self, enabled: bool) -> bool:
        value = "true" if enabled else "false"
        with session_scope(self._session_factory) as db:
            row = db.get(SystemSetting, self.setting_key)
            if row is None:
                db.add(SystemSetting(setting_key=self.setting_key, setting_value=value))
            else:
                row.setting_value = value
                row.updated_at = datetime.now(timezone.utc)
        logger.info("KB analytics %s", "enabled" if enabled else "disabled")
        return enabled

    def record_query(self, usage: KbQueryUsage) -> bool:
        try:
            if not self.is_enabled():
                return False
            with session_scope(self._session_factory) as db:
                db.add(
                    KbQueryLog(
                        query_text=usage.query_text[:QUERY_TEXT_MAX_CHARS],
                        conversation_id=usage.conversation_id,
                        chunks_found=usage.chunks_found,
                        chunks_used=usage.chunks_used,
                        avg_similarity=usage.avg_similarity,
                        sources=list(usage.sources),
                        embedding_time_ms=usage.embedding_time_ms,
                        retrieval_time_ms=usage.retrieval_time_ms,
                        total_time_ms=usage.total_time_ms,
                        threshold_used=usage.threshold_used,
                    )
                )
        except SQLAlchemyError:
            logger.exception("KB analytics tracking failed")
            return False
        logger.debug("KB usage tracked: found=%d used=%d", usage.chunks_found, usage.chunks_used)
        return True

    def usage_stats(self, days: int) -> KbUsageStats:
        """Aggregate the usage log over the last `days` days.

        Raises:
            ValueError: If days < 1.
        """
        if days < 1:
            raise ValueError("days must be >= 1")
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with session_scope(self._session_factory) as db:
            totals = db.execute(
                select(
                    func.count(KbQueryLog.id),
                    func.avg(KbQueryLog.chunks_found),
                    func.avg(KbQueryLog.chunks_used),
                    func.avg(KbQueryLog.avg_similarity),
                    func.avg(KbQueryLog.total_time_ms),
                ).where(KbQueryLog.created_at >= cutoff)
            ).one()
            rows = db.execute(
                select(KbQueryLog.sources, KbQueryLog.created_at).where(KbQueryLog.created_at >= cutoff)
            ).all()

        count, avg_found, avg_used, avg_sim, avg_ms = totals
        if not count:
            return KbUsageStats()

        sources: Counter = Counter()
        per_day: Counter = Counter()
        for row in rows:
            sources.update(row.sources or [])
            per_day[row.created_at.date().isoformat()] += 1

        return KbUsageStats(
            total_queries=count,
            avg_chunks_found=round(float(avg_found), 2),
            avg_chunks_used=round(float(avg_used), 2),
            avg_similarity=round(float(avg_sim), 4),
            avg_response_time_ms=round(float(avg_ms), 1),
            top_sources=[SourceUsage(file_name=name, count=n) for name, n in sources.most_common(TOP_SOURCES)],
            queries_per_day=dict(sorted(per_day.items())),
        )
