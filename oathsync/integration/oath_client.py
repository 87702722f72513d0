"""NYC OATH hearings dataset client (Socrata API).

Pages through the dataset once per client search term, maps rows to
SourceRecords and merges the results deduplicated by ticket number. A
failing term is logged and recorded; it never aborts the fetch.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

import httpx

from oathsync.canonical.names import core_search_term, is_valid_name
from oathsync.canonical.values import normalize_text, normalize_timestamp, to_amount
from oathsync.config import SourceConfig
from oathsync.errors import SourceFetchError
from oathsync.models import Client
from oathsync.pipeline.types import FetchResult, SourceRecord

logger = logging.getLogger(__name__)

CHARGE_FIELDS = (
    "charge_1_code_description",
    "charge_2_code_description",
    "charge_3_code_description",
)
LOCATION_FIELDS = (
    "violation_location_house",
    "violation_location_street_name",
    "violation_location_city",
    "violation_location_zip_code",
)


def derive_search_terms(clients: Iterable[Client]) -> list[str]:
    """Distinct upper-cased core names (minus suffix) for every client and aka.

    Order follows the client roster; duplicates keep their first position.
    """
    terms: list[str] = []
    seen: set[str] = set()
    for client in clients:
        for name in client.all_names:
            if not is_valid_name(name):
                continue
            term = core_search_term(name)
            if term and term not in seen:
                seen.add(term)
                terms.append(term)
    return terms


def _quote(value: str) -> str:
    return value.replace("'", "''")


class OathClient:
    """Async client for the OATH hearings resource."""

    def __init__(
        self,
        config: SourceConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or SourceConfig()
        headers = {"Accept": "application/json"}
        if self.config.app_token:
            headers["X-App-Token"] = self.config.app_token

        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            timeout=self.config.timeout_seconds, headers=headers
        )
        if http_client is not None:
            self.client.headers.update(headers)

    async def __aenter__(self) -> OathClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # Query building -----------------------------------------------------

    def keyword_clause(self) -> str | None:
        keyword = self.config.violation_keyword.strip().upper()
        if not keyword:
            return None
        likes = " OR ".join(
            f"upper({field}) like '%{_quote(keyword)}%'" for field in CHARGE_FIELDS
        )
        return f"({likes})"

    def build_params(self, term: str | None, offset: int = 0) -> dict[str, str]:
        """Socrata query parameters for one page of a search term (None = keyword mode).

        Pages are ordered on ticket_number so $offset paging is stable.
        """
        clauses: list[str] = []
        if term:
            quoted = _quote(term.upper())
            clauses.append(
                f"(upper(respondent_last_name) like '%{quoted}%' "
                f"OR upper(respondent_first_name) like '%{quoted}%')"
            )
        keyword = self.keyword_clause()
        if keyword:
            clauses.append(keyword)

        params = {"$limit": str(self.config.result_limit)}
        if clauses:
            params["$where"] = " AND ".join(clauses)
        params["$order"] = "hearing_date DESC, ticket_number" if term is None else "ticket_number"
        if offset:
            params["$offset"] = str(offset)
        return params

    # Fetching -----------------------------------------------------------

    async def query(self, term: str | None, offset: int = 0) -> list[dict[str, Any]]:
        """Fetch one page.

        Raises:
            SourceFetchError: On HTTP errors or a non-list JSON body
        """
        label = term or "<keyword>"
        try:
            response = await self.client.get(
                self.config.api_url, params=self.build_params(term, offset)
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise SourceFetchError(
                label, f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise SourceFetchError(label, str(e) or type(e).__name__) from e

        if not isinstance(data, list):
            raise SourceFetchError(label, f"unexpected payload type {type(data).__name__}")
        return data

    async def query_all(self, term: str | None) -> tuple[list[dict[str, Any]], bool]:
        """Page through one search term until a short page comes back.

        Returns:
            (rows, exhausted) where exhausted is False when max_pages full
            pages were read and more rows may remain

        Raises:
            SourceFetchError: If any page fails
        """
        page_size = self.config.result_limit
        rows: list[dict[str, Any]] = []
        offset = 0

        for _ in range(self.config.max_pages):
            page = await self.query(term, offset)
            rows.extend(page)
            if len(page) < page_size:
                return rows, True
            offset += len(page)
            logger.debug(f"Term {term or '<keyword>'}: page full, continuing at offset {offset}")

        return rows, False

    async def fetch(self, clients: list[Client]) -> FetchResult:
        """Fetch and merge source rows for the client roster."""
        result = FetchResult()

        if self.config.search_mode == "keyword":
            queries: list[str | None] = [None]
        else:
            result.terms = derive_search_terms(clients)
            queries = list(result.terms)

        result.queries = len(queries)
        seen: set[str] = set()
        for term in queries:
            label = term or "<keyword>"
            try:
                rows, exhausted = await self.query_all(term)
            except SourceFetchError as e:
                logger.warning(str(e))
                result.failed_terms.append(e.term)
                continue

            if not exhausted:
                logger.warning(
                    f"Term {label}: stopped after {self.config.max_pages} full pages; "
                    f"results truncated"
                )
                result.truncated_terms.append(label)

            logger.debug(f"Term {label}: {len(rows)} rows")
            result.rows_seen += len(rows)

            for row in rows:
                record = self.parse_row(row)
                if record is None:
                    result.filtered_out += 1
                    continue
                if record.summons_number in seen:
                    result.duplicates += 1
                    continue
                seen.add(record.summons_number)
                result.records.append(record)

        logger.info(
            f"Fetched {len(result.records)} unique records from {len(queries)} queries "
            f"({len(result.failed_terms)} failed, {len(result.truncated_terms)} truncated, "
            f"{result.duplicates} duplicates)"
        )
        return result

    # Row mapping --------------------------------------------------------

    def _matches_keyword(self, row: dict[str, Any]) -> bool:
        keyword = self.config.violation_keyword.strip().upper()
        if not keyword:
            return True
        return any(keyword in str(row.get(f) or "").upper() for f in CHARGE_FIELDS)

    def parse_row(self, row: dict[str, Any]) -> SourceRecord | None:
        """Map one dataset row, or None if it has no ticket or fails the keyword filter."""
        ticket = normalize_text(row.get("ticket_number"))
        if not ticket or not self._matches_keyword(row):
            return None

        first = (row.get("respondent_first_name") or "").strip()
        last = (row.get("respondent_last_name") or "").strip()
        if not first and not last:
            last = (row.get("respondent") or "").strip()

        location = " ".join(
            str(row[f]).strip() for f in LOCATION_FIELDS if normalize_text(row.get(f))
        )

        return SourceRecord(
            summons_number=ticket,
            respondent_first_name=first,
            respondent_last_name=last,
            status=normalize_text(row.get("hearing_status"))
            or normalize_text(row.get("hearing_result"))
            or "Unknown",
            hearing_result=normalize_text(row.get("hearing_result")),
            hearing_date=normalize_timestamp(row.get("hearing_date")),
            hearing_time=normalize_text(row.get("hearing_time")),
            code_description=normalize_text(row.get("charge_1_code_description"))
            or normalize_text(row.get("violation_description")),
            violation_date=normalize_timestamp(row.get("violation_date")),
            violation_time=normalize_text(row.get("violation_time")),
            violation_location=location or None,
            license_plate=normalize_text(row.get("license_plate")),
            base_fine=to_amount(row.get("total_violation_amount")),
            amount_due=to_amount(row.get("balance_due")),
            paid_amount=to_amount(row.get("paid_amount")),
            penalty_imposed=to_amount(row.get("penalty_imposed")),
            summons_pdf_link=self.config.pdf_link_template.format(ticket=ticket),
            video_link=self.config.video_link_template.format(ticket=ticket),
            raw=row,
        )
