"""HTTP clients for the indexing and rank-data APIs."""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import aiohttp

from quota_jobs.errors import QuotaExhaustedError, RemoteHttpError
from quota_jobs.models import Credential, RankResult

COUNTRY_NAMES = {
    "AU": "Australia",
    "BR": "Brazil",
    "CA": "Canada",
    "DE": "Germany",
    "ES": "Spain",
    "FR": "France",
    "GB": "United Kingdom",
    "ID": "Indonesia",
    "IN": "India",
    "IT": "Italy",
    "JP": "Japan",
    "MY": "Malaysia",
    "NL": "Netherlands",
    "PH": "Philippines",
    "SG": "Singapore",
    "TH": "Thailand",
    "US": "United States",
    "VN": "Vietnam",
}


def extract_domain(url: str) -> str:
    """Lower-cased host of ``url`` with any leading ``www.`` removed."""
    candidate = url if url.startswith(("http://", "https://")) else f"https://{url}"
    host = urlparse(candidate).hostname or url.split("/")[0]
    host = host.lower()
    if host.startswith("www."):
        host = host[len("www.") :]
    return host


def find_rank(results: list, target_domain: str) -> RankResult:
    """Position of the first search result hosted on ``target_domain``."""
    target = extract_domain(target_domain)
    for index, result in enumerate(results, start=1):
        result_url = result.get("url") or ""
        if result_url and extract_domain(result_url) == target:
            return RankResult(
                position=result.get("position") or index,
                url=result_url,
                found=True,
                total_results=len(results),
            )
    return RankResult(found=False, total_results=len(results))


class _JsonApiClient:
    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = base_url
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or logging.getLogger(__name__)

    async def _post_json(
        self,
        body: Dict[str, Any],
        headers: Dict[str, str],
        credential: Credential,
        quota_statuses: tuple,
    ) -> Dict[str, Any]:
        if self.session is not None:
            return await self._send(self.session, body, headers, credential, quota_statuses)

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await self._send(session, body, headers, credential, quota_statuses)

    async def _send(self, session, body, headers, credential, quota_statuses):
        try:
            async with session.post(
                self.base_url, json=body, headers=headers, timeout=self.timeout
            ) as resp:
                response_body = await resp.text()

                if resp.status in quota_statuses:
                    raise QuotaExhaustedError(
                        f"HTTP {resp.status}: API quota exhausted for credential {credential.id}",
                        credential_id=credential.id,
                    )

                if resp.status >= 400:
                    raise RemoteHttpError(
                        status_code=resp.status,
                        message=f"Request failed: {response_body}",
                        response_body=response_body,
                    )

                return await resp.json()

        except aiohttp.ClientError as e:
            raise RemoteHttpError(
                status_code=0,
                message=f"Network error: {str(e)}",
            ) from e


class IndexingApiClient(_JsonApiClient):
    """Client for the Google Indexing API ``urlNotifications:publish`` call."""

    async def submit(self, url: str, credential: Credential) -> Dict[str, Any]:
        """
        Notify the indexing API that ``url`` was updated.

        Raises:
            QuotaExhaustedError: On HTTP 429
            RemoteHttpError: On any other failed request
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential.secret}",
        }
        body = {"url": url, "type": "URL_UPDATED"}

        self.logger.debug(f"Submitting {url} with credential {credential.id}")
        return await self._post_json(body, headers, credential, quota_statuses=(429,))


class RankDataClient(_JsonApiClient):
    """Client for the search API used to look up keyword positions."""

    def __init__(
        self,
        base_url: str,
        default_units: int = 10,
        result_limit: int = 100,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(base_url, session=session, timeout=timeout, logger=logger)
        self.default_units = default_units
        self.result_limit = result_limit

    async def check_rank(
        self,
        keyword: str,
        domain: str,
        device: str,
        country: str,
        credential: Credential,
    ) -> RankResult:
        """
        Search for ``keyword`` and locate ``domain`` in the results.

        Raises:
            QuotaExhaustedError: On HTTP 402 or 429
            RemoteHttpError: On any other failed request
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential.secret}",
        }
        body = {
            "query": keyword,
            "sources": ["web"],
            "categories": [],
            "limit": self.result_limit,
            "location": COUNTRY_NAMES.get(country.upper(), country),
        }
        if device == "mobile":
            body["mobile"] = True

        response = await self._post_json(body, headers, credential, quota_statuses=(402, 429))
        if response.get("success") is False:
            raise RemoteHttpError(status_code=200, message="Search request was not successful")

        data = response.get("data") or {}
        results = data.get("web") or []
        rank = find_rank(results, domain)
        rank.units_consumed = data.get("creditsUsed") or self.default_units

        self.logger.debug(
            f"Keyword {keyword!r} for {domain}: position={rank.position}, "
            f"{rank.total_results} results, {rank.units_consumed} units"
        )
        return rank
