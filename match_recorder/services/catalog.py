"""Stream catalog backed by the matches table and the stream source config."""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from match_recorder.models.domain import Match
from match_recorder.services.config_manager import ConfigManager, ConfigurationError
from match_recorder.services.interfaces import PersistenceStore

logger = logging.getLogger(__name__)


class PersistedStreamCatalog:
    """StreamCatalog over persisted matches and configured stream sources.

    Matches enter the catalog through ``save_match``; the dispatcher only
    reads them back through ``upcoming_matches``.
    """

    def __init__(self, store: PersistenceStore, config_manager: Optional[ConfigManager] = None):
        self.store = store
        self.config_manager = config_manager

    def upcoming_matches(self, now: datetime) -> List[Match]:
        """Auto-record matches kicking off after ``now``."""
        return self.store.list_upcoming_matches(now, auto_record_only=True)

    def stream_url(self, source_key: str) -> Optional[str]:
        if self.config_manager is None:
            return None
        try:
            return self.config_manager.get_stream_url(source_key)
        except ConfigurationError as e:
            logger.warning(f"Stream sources unavailable: {e}")
            return None

    def save_match(self, match: Match) -> Match:
        """Insert or update a match.

        A match without an id but with a known external id updates the
        existing row instead of creating a second one.
        """
        if match.match_date.tzinfo is None:
            match.match_date = match.match_date.replace(tzinfo=timezone.utc)
        if not match.id and match.external_id:
            existing = self.store.find_match_by_external_id(match.external_id)
            if existing is not None:
                match.id = existing.id

        saved = self.store.upsert_match(match)
        logger.info(f"Match saved: {saved.title}", extra={
            'match_id': saved.id,
            'match_date': saved.match_date.isoformat(),
            'auto_record': saved.auto_record
        })
        return saved

    def set_auto_record(self, match_id: str, enabled: bool) -> Optional[Match]:
        """Enable or disable auto-recording; None when the match is unknown."""
        match = self.store.set_match_auto_record(match_id, enabled)
        if match is not None:
            action = "enabled" if enabled else "disabled"
            logger.info(f"Auto-record {action} for match: {match.title}", extra={'match_id': match_id})
        return match
