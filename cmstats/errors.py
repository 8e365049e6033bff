class CMStatsError(Exception):
    pass


class APIError(CMStatsError):
    """
    Non-2xx answer from the vendor API.
    status == 0 means the request never produced a response (DNS, reset, timeout).
    """

    def __init__(self, status: int, body: str = "", retry_after: float | None = None):
        self.status = status
        self.body = body
        self.retry_after = retry_after
        super().__init__(f"API request failed with status {status}: {body[:200]}")

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class RateLimitExceeded(APIError):
    def __init__(self, body: str = "", retry_after: float | None = None):
        super().__init__(429, body, retry_after)


class AuthError(CMStatsError):
    pass


class SchemaError(CMStatsError):
    pass


class IngestError(CMStatsError):
    pass


class FingerprintError(CMStatsError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"missing achievements: {', '.join(missing)}")


class RankingError(CMStatsError):
    pass
