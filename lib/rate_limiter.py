from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from lib.database import rows, utc_now

logger = logging.getLogger(__name__)

class RateLimiter:
    """Sliding-window limit on failed attempts, stored in the database.

    Attempts are rows rather than process memory so every instance behind the
    load balancer sees the same window.
    """

    def __init__(self, supabase_client, table: str, max_failures: int, window_seconds: int):
        self.supabase = supabase_client
        self.table = table
        self.max_failures = max_failures
        self.window_seconds = window_seconds

    def check_limit(self, key: str, max_failures: Optional[int] = None) -> bool:
        """True while ``key`` is still allowed to make attempts."""
        limit = self.max_failures if max_failures is None else max_failures
        since = (datetime.now(timezone.utc) - timedelta(seconds=self.window_seconds)).isoformat()
        result = self.supabase.table(self.table)\
            .select('id', count='exact')\
            .eq('attempt_key', key)\
            .eq('succeeded', False)\
            .gte('created_at', since)\
            .execute()
        failures = result.count if result.count is not None else len(rows(result))
        return failures < limit

    def record_attempt(self, key: str, succeeded: bool, detail: Optional[str] = None) -> None:
        try:
            self.supabase.table(self.table).insert({
                'attempt_key': key,
                'succeeded': succeeded,
                'detail': detail,
                'created_at': utc_now()
            }).execute()
        except Exception as e:
            logger.warning(f"Failed to record attempt for {key}: {str(e)}")
