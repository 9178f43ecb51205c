"""Retrieval configuration store.

The admin-tunable RetrievalConfig lives as JSON in the system_settings row keyed
by settings.KB_CONFIG_SETTING_KEY. Reads go through an optional cache; writes
update the row and invalidate the cache, so an admin change is visible to the
next retrieval. Missing or malformed rows fall back to the defaults
(similarity_threshold=0.78, max_chunks=5, use_top_chunks=3, debug_mode=False).
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from wellness_kb.cache import ConfigCache
from wellness_kb.config import settings
from wellness_kb.db import SessionFactory, session_scope
from wellness_kb.exceptions import InvalidRetrievalConfig
from wellness_kb.models import SystemSetting
from wellness_kb.schemas import RetrievalConfig

logger = logging.getLogger(__name__)


def default_retrieval_config() -> RetrievalConfig:
    return RetrievalConfig()


def _merge_with_defaults(stored: dict) -> RetrievalConfig:
    merged = {**default_retrieval_config().model_dump(), **stored}
    return RetrievalConfig.model_validate(merged)


class RetrievalConfigStore:
    """Read-through store for the process-wide RetrievalConfig."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        cache: Optional[ConfigCache] = None,
        setting_key: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self.setting_key = setting_key or settings.KB_CONFIG_SETTING_KEY

    def get_retrieval_config(self) -> RetrievalConfig:
        """Return the current config, falling back to defaults when absent or unreadable."""
        stored = self._cache.get(self.setting_key) if self._cache is not None else None
        if stored is None:
            try:
                stored = self._load_row()
            except SQLAlchemyError:
                logger.exception("Error fetching KB config, using defaults")
                return default_retrieval_config()
            if stored is None:
                return default_retrieval_config()
            if self._cache is not None:
                self._cache.set(self.setting_key, stored)

        try:
            return _merge_with_defaults(stored)
        except ValidationError as exc:
            logger.warning("Stored KB config is invalid, using defaults: %s", exc)
            return default_retrieval_config()

    def has_stored_config(self) -> bool:
        return self._load_row() is not None

    def set_retrieval_config(self, config: RetrievalConfig) -> RetrievalConfig:
        """Persist a new config and invalidate the cache.

        Raises:
            InvalidRetrievalConfig: If the payload fails validation.
        """
        try:
            config = RetrievalConfig.model_validate(config.model_dump())
        except ValidationError as exc:
            raise InvalidRetrievalConfig(str(exc)) from exc

        payload = json.dumps(config.model_dump())
        with session_scope(self._session_factory) as db:
            row = db.get(SystemSetting, self.setting_key)
            if row is None:
                db.add(SystemSetting(setting_key=self.setting_key, setting_value=payload))
            else:
                row.setting_value = payload
                row.updated_at = datetime.now(timezone.utc)
        if self._cache is not None:
            self._cache.invalidate(self.setting_key)
        logger.info("Updated KB retrieval config: %s", payload)
        return config

    def _load_row(self) -> Optional[dict]:
        with session_scope(self._session_factory) as db:
            row = db.get(SystemSetting, self.setting_key)
            raw = row.setting_value if row is not None else None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("KB config row %s is not valid JSON, using defaults", self.setting_key)
            return None
        return value if isinstance(value, dict) else None
