"""HTTP providers: Yahoo Finance quotes and headlines, plus the shared retrying JSON client."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..core.config import Contracts
from ..core.types import NewsItem, Observation
from ..engines.normalizer import observation_from_chart, tag_news

logger = logging.getLogger(__name__)

CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
SEARCH_URL = "https://query1.finance.yahoo.com/v1/finance/search"
USER_AGENT = "Mozilla/5.0 (market-drivers)"


class RetryingJSONClient:
    """
    httpx client wrapper that retries transport errors and 5xx responses with linear backoff.

    After the last attempt the error is raised so the orchestrator records the source
    as unavailable. 4xx responses are raised immediately.
    """

    def __init__(self, max_retries: int = 3, client: Optional[httpx.AsyncClient] = None):
        self.max_retries = max_retries
        self.client = client or httpx.AsyncClient(timeout=10.0, headers={"User-Agent": USER_AGENT})

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        for attempt in range(self.max_retries):
            try:
                response = await self.client.get(url, params=params)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"HTTP error on {url}: {e.response.status_code}")
                if attempt == self.max_retries - 1 or e.response.status_code < 500:
                    raise
            except httpx.RequestError as e:
                logger.warning(f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt == self.max_retries - 1:
                    raise
            await asyncio.sleep(1 * (attempt + 1))
        raise RuntimeError(f"no attempts made for {url}")

    async def close(self):
        await self.client.aclose()


class YahooQuoteProvider(RetryingJSONClient):
    """Fetches quotes from the Yahoo chart API and headlines from Yahoo search."""

    def __init__(
        self,
        contracts: Contracts,
        max_retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
        news_query: Optional[str] = None,
    ):
        """
        Args:
            contracts: Loaded contracts (sector and constituent universe, news keywords)
            max_retries: Attempts per request
            client: Optional preconfigured client (tests pass one with a mock transport)
            news_query: Search term for headlines (defaults to the primary symbol)
        """
        super().__init__(max_retries=max_retries, client=client)
        self.contracts = contracts
        self.news_query = news_query or contracts.instruments["primary"]["symbol"]
        self.news_limit = int(contracts.views.get("news_limit", 10))

    async def fetch_quote(self, symbol: str) -> Observation:
        payload = await self._get(CHART_URL.format(symbol=symbol), params={"interval": "1d", "range": "2d"})
        return observation_from_chart(symbol, payload, symbol=symbol)

    async def _fetch_many(self, symbols: Mapping[str, Any]) -> Dict[str, Observation]:
        names = list(symbols)
        results = await asyncio.gather(*(self.fetch_quote(n) for n in names), return_exceptions=True)
        out: Dict[str, Observation] = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.warning(f"quote {name} failed: {result}")
                continue
            out[name] = result
        if names and not out:
            raise RuntimeError(f"all {len(names)} quotes failed")
        return out

    async def fetch_sector_performance(self) -> Dict[str, Observation]:
        return await self._fetch_many(self.contracts.instruments.get("sectors", {}))

    async def fetch_top_constituents(self) -> Dict[str, Observation]:
        return await self._fetch_many(self.contracts.instruments.get("top_constituents", {}).get("stocks", {}))

    async def fetch_headlines(self) -> List[Dict[str, Any]]:
        payload = await self._get(SEARCH_URL, params={"q": self.news_query, "newsCount": 30, "quotesCount": 0})
        items = []
        for raw in payload.get("news", []):
            if not raw.get("title") or not raw.get("providerPublishTime"):
                continue
            items.append({
                "headline": raw["title"],
                "published_at": raw["providerPublishTime"],
                "source": raw.get("publisher") or "Yahoo",
                "url": raw.get("link"),
            })
        return items

    async def fetch_filtered_news(self, session_key: str) -> List[NewsItem]:
        headlines = await self.fetch_headlines()
        return tag_news(
            headlines,
            session_key,
            self.contracts.instruments["news_keywords"],
            now=datetime.now(timezone.utc),
            limit=self.news_limit,
        )
