"""US Drought Monitor and NOAA CPC outlook provider."""
import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from . import RetryingJSONClient

logger = logging.getLogger(__name__)

DROUGHT_URL = "https://usdmdataservices.unl.edu/api/USStatistics/GetDroughtSeverityStatisticsByArea"
OUTLOOK_URL = "https://mapservices.weather.noaa.gov/vector/rest/services/outlooks/cpc_6_10_day_outlk/MapServer/{layer}/query"
OUTLOOK_LAYERS = {"temperature": 0, "precipitation": 1}
DROUGHT_LOOKBACK_DAYS = 14


def _usdm_date(d: date) -> str:
    return f"{d.month}/{d.day}/{d.year}"


class WeatherProvider(RetryingJSONClient):
    """Raw drought statistics and 6-10 day outlook layers. Parsing is left to engines.weather."""

    def __init__(
        self,
        max_retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
        today_fn: Optional[Callable[[], date]] = None,
    ):
        super().__init__(max_retries=max_retries, client=client)
        self.today_fn = today_fn or date.today

    async def fetch_drought_statistics(self) -> List[Dict[str, Any]]:
        """Weekly national drought areas for the last two weeks, most recent first."""
        today = self.today_fn()
        params = {
            "aoi": "us",
            "startdate": _usdm_date(today - timedelta(days=DROUGHT_LOOKBACK_DAYS)),
            "enddate": _usdm_date(today),
            "statisticsType": 1,
        }
        rows = await self._get(DROUGHT_URL, params=params)
        if not isinstance(rows, list):
            raise ValueError(f"unexpected drought payload: {type(rows).__name__}")
        return rows

    async def _fetch_layer(self, layer: int) -> List[Dict[str, Any]]:
        payload = await self._get(OUTLOOK_URL.format(layer=layer), params={"where": "1=1", "outFields": "*", "f": "json"})
        return payload.get("features") or []

    async def fetch_outlook(self) -> Dict[str, List[Dict[str, Any]]]:
        """Temperature and precipitation features. A missing precipitation layer is logged and left empty."""
        temperature, precipitation = await asyncio.gather(
            self._fetch_layer(OUTLOOK_LAYERS["temperature"]),
            self._fetch_layer(OUTLOOK_LAYERS["precipitation"]),
            return_exceptions=True,
        )
        if isinstance(temperature, Exception):
            raise temperature
        if isinstance(precipitation, Exception):
            logger.warning(f"precipitation outlook failed: {precipitation}")
            precipitation = []
        return {"temperature": temperature, "precipitation": precipitation}
