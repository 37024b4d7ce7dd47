from datetime import UTC, datetime


class SystemClock:
    def now_utc(self) -> datetime:
        return datetime.now(UTC)

    def now_millis(self) -> int:
        return int(self.now_utc().timestamp() * 1000)
