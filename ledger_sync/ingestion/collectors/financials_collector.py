"""Partner Financials API client.

Talks to two endpoints of the partner financials web API:

    IPartnerFinancialsService/GetChangedDatesForPartner/v1
        key, highwatermark -> response.dates, response.result_highwatermark

    IPartnerFinancialsService/GetDetailedSales/v1
        key, date, highwatermark_id -> response.results, response.max_id,
        plus lookup arrays (app_info, package_info, country_info, ...)

Detailed sales for one date are paginated: each page returns ``max_id``,
which becomes the ``highwatermark_id`` of the next request. Paging stops
when a page is empty or ``max_id`` does not advance.

The client never retries; failed requests surface as TransportError and
the caller decides what to do. Secrets are never written to the log.

Example:

    collector = PartnerFinancialsCollector()
    changed = collector.discover(secret, since_watermark=0)
    for page in collector.iter_date_pages(secret, changed.dates[0]):
        print(len(page.items), page.max_id)
"""

import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter

from ledger_sync.ingestion.collectors.base_collector import BaseCollector
from ledger_sync.ingestion.preprocessors.sales_normalizer import LookupTables
from ledger_sync.shared.config import Config
from ledger_sync.shared.errors import ProtocolError, TransportError

CHANGED_DATES_ENDPOINT = "IPartnerFinancialsService/GetChangedDatesForPartner/v1"
DETAILED_SALES_ENDPOINT = "IPartnerFinancialsService/GetDetailedSales/v1"


@dataclass(frozen=True)
class ChangedDates:
    """Dates with new or revised data since a watermark."""

    dates: list[str]
    watermark: int


@dataclass(frozen=True)
class DetailPage:
    """One page of detailed sales for a single date."""

    date: str
    cursor: int
    items: list[dict]
    max_id: int
    lookups: LookupTables = field(default_factory=LookupTables)

    @property
    def has_more(self) -> bool:
        return self.max_id > self.cursor and bool(self.items)


def _parse_counter(value: object, name: str, default: int) -> int:
    """Watermarks and page ids come back as JSON numbers or numeric strings."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ProtocolError(f"{name} is not numeric: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ProtocolError(f"{name} is not numeric: {value!r}")


class PartnerFinancialsCollector(BaseCollector):
    """Client for the partner financials changed-dates and detailed-sales endpoints."""

    SOURCE_NAME = "partner_financials"

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        min_request_interval: float | None = None,
        output_dir: Path | None = None,
        log_file: Path | None = None,
    ) -> None:
        super().__init__(
            output_dir=output_dir or Config.DATA_DIR / "raw" / self.SOURCE_NAME,
            log_file=log_file or Config.LOGS_DIR / "collectors" / "financials_collector.log",
        )
        self.base_url = (base_url or Config.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else Config.REQUEST_TIMEOUT
        self.min_request_interval = (
            min_request_interval
            if min_request_interval is not None
            else Config.MIN_REQUEST_INTERVAL
        )
        self._session = self._create_session()
        self._last_request_time: float = 0.0
        self.logger.info("PartnerFinancialsCollector initialized, base_url=%s", self.base_url)

    # ------------------------------------------------------------------
    # BaseCollector interface
    # ------------------------------------------------------------------

    def health_check(self, secret: str) -> bool:
        """Check the API answers the changed-dates call for ``secret``."""
        try:
            self.discover(secret, since_watermark=0)
            return True
        except (TransportError, ProtocolError) as e:
            self.logger.warning("Health check failed: %s", e)
            return False

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def discover(self, secret: str, since_watermark: int) -> ChangedDates:
        """List dates whose data changed since ``since_watermark``.

        Raises:
            TransportError: Network failure, timeout or non-2xx status.
            ProtocolError: Malformed response.
        """
        payload = self._get(
            CHANGED_DATES_ENDPOINT, {"key": secret, "highwatermark": str(since_watermark)}
        )

        dates = payload.get("dates") or []
        if not isinstance(dates, list) or not all(isinstance(d, str) for d in dates):
            raise ProtocolError("response.dates is not a list of date strings")

        watermark = _parse_counter(
            payload.get("result_highwatermark"), "result_highwatermark", since_watermark
        )
        self.logger.info(
            "Discovered %d changed dates (watermark %d -> %d)",
            len(dates),
            since_watermark,
            watermark,
        )
        return ChangedDates(dates=list(dates), watermark=watermark)

    def fetch_date(self, secret: str, date: str, cursor: int = 0) -> DetailPage:
        """Fetch one page of detailed sales for ``date`` starting after ``cursor``."""
        payload = self._get(
            DETAILED_SALES_ENDPOINT,
            {"key": secret, "date": date, "highwatermark_id": str(cursor)},
        )

        items = payload.get("results") or []
        if not isinstance(items, list):
            raise ProtocolError("response.results is not a list")

        max_id = _parse_counter(payload.get("max_id"), "max_id", 0)
        page = DetailPage(
            date=date,
            cursor=cursor,
            items=items,
            max_id=max_id,
            lookups=LookupTables.from_response(payload),
        )
        self.logger.debug("Fetched %d items for %s (cursor %d -> %d)", len(items), date, cursor, max_id)
        return page

    def iter_date_pages(self, secret: str, date: str) -> Iterator[DetailPage]:
        """Yield every non-empty page for ``date``, starting from cursor 0."""
        cursor = 0
        while True:
            page = self.fetch_date(secret, date, cursor)
            if page.items:
                yield page
            if not page.has_more:
                break
            cursor = page.max_id

    # ------------------------------------------------------------------
    # Private: HTTP layer
    # ------------------------------------------------------------------

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=0)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _throttle_request(self) -> None:
        """Ensure minimum interval between API requests to respect rate limits."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.min_request_interval:
            time.sleep(self.min_request_interval - elapsed)
        self._last_request_time = time.time()

    def _get(self, endpoint: str, params: dict[str, str]) -> dict:
        """GET ``endpoint`` and return its ``response`` object.

        Raises:
            TransportError: Network failure, timeout or non-2xx status.
            ProtocolError: Body is not JSON or has no ``response`` object.
        """
        url = f"{self.base_url}/{endpoint}"
        safe_params = {k: v for k, v in params.items() if k != "key"}
        self.logger.debug("GET %s %s", endpoint, safe_params)

        self._throttle_request()
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransportError(f"{endpoint} timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            # Exception text can echo the request URL including the key
            raise TransportError(f"{endpoint} request failed: {type(e).__name__}") from e

        if not response.ok:
            raise TransportError(
                f"{endpoint} returned HTTP {response.status_code} {response.reason}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProtocolError(f"{endpoint} returned a non-JSON body") from e

        payload = body.get("response") if isinstance(body, dict) else None
        if not isinstance(payload, dict):
            raise ProtocolError(f"{endpoint} body has no 'response' object")
        return payload
