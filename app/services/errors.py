# =========================
# Google Maps 仲介レイヤのエラー
# =========================


class PlacesError(Exception):
    pass


class InvalidInput(PlacesError):
    """呼び出し側のパラメータ不備。リトライしても無駄"""


class QuotaExceeded(PlacesError):
    def __init__(self, total_calls: int, session_limit: int):
        self.total_calls = total_calls
        self.session_limit = session_limit
        super().__init__(f"Request limit reached ({total_calls}/{session_limit})")


class RateLimited(PlacesError):
    def __init__(self, category: str, retry_after: float):
        self.category = category
        self.retry_after = retry_after
        super().__init__("Rate limit reached, please try again in a moment")


class PlacesUpstreamError(PlacesError):
    def __init__(self, status: str, message: str | None = None):
        self.status = status
        self.message = message
        super().__init__(f"{status}: {message}" if message else status)
