"""Exception hierarchy for rpde_harvester.

Every error carries a short ``kind`` string that is stored in the feed's
status record so operators can tell outages from bad data.
"""

from typing import Optional


class HarvesterError(Exception):
    """Base class for all harvester errors."""

    kind = "error"


class FetchError(HarvesterError):
    """A page could not be fetched or understood. Retried on the next sweep."""

    kind = "fetch"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class TransportError(FetchError):
    """Connection failure or timeout."""

    kind = "transport"


class HttpStatusError(FetchError):
    """Publisher answered with a status outside [200, 400)."""

    kind = "http_status"

    def __init__(self, status_code: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status_code}", url)
        self.status_code = status_code


class MalformedDataError(FetchError):
    """Body is not a valid RPDE page; the whole page is discarded."""

    kind = "malformed"


class PersistenceError(HarvesterError):
    """Storage failure. The previous durable record is left intact."""

    kind = "persistence"
