"""USD price cache per network.

price() only reads the cache, so funding checks never block on a price
feed. CoinGeckoPriceOracle keeps the cache fresh from a background job.
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal

import requests

from protocol import (
    COINGECKO_API_KEY, COINGECKO_API_URL, COINGECKO_PRO_API_URL, NETWORKS, Network,
    PRICE_MAX_RETRIES, PRICE_REFRESH_INTERVAL, PRICE_RETRY_BASE_DELAY,
)
from pledge.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# Rough prices for simulation mode and tests
SIM_PRICES = {
    Network.ERC20: Decimal("2500"),
    Network.ARBITRUM: Decimal("2500"),
    Network.OPTIMISM: Decimal("2500"),
    Network.POLYGON: Decimal("0.5"),
    Network.BSC: Decimal("600"),
    Network.METIS: Decimal("20"),
}


class PriceOracle(ABC):

    @abstractmethod
    def price(self, network: Network) -> Decimal:
        """USD price of the network's native token. Raises ExternalServiceError if unknown."""
        ...


class StaticPriceOracle(PriceOracle):
    """Fixed price table."""

    def __init__(self, prices: dict[Network, Decimal] | None = None):
        self.prices = dict(SIM_PRICES if prices is None else prices)

    def price(self, network: Network) -> Decimal:
        try:
            return Decimal(self.prices[network])
        except KeyError:
            raise ExternalServiceError(f"No price for {network.value}", service="prices") from None


class CoinGeckoPriceOracle(PriceOracle):
    """CoinGecko-backed cache, refreshed every PRICE_REFRESH_INTERVAL seconds.

    refresh() retries with exponential backoff (1s, 2s, 4s, ...) and keeps
    the previous prices if every attempt fails.
    """

    def __init__(self, api_key: str | None = None, session: requests.Session | None = None,
                 sleep=time.sleep):
        self.api_key = COINGECKO_API_KEY if api_key is None else api_key
        self._http = session or requests.Session()
        self._sleep = sleep
        self._cache: dict[Network, Decimal] = {}
        self._lock = threading.Lock()
        self.last_refresh: float | None = None

    def price(self, network: Network) -> Decimal:
        with self._lock:
            value = self._cache.get(network)
        if value is None:
            raise ExternalServiceError(f"Price for {network.value} not cached yet", service="prices")
        return value

    def _fetch(self) -> dict:
        ids = sorted({cfg["coingecko_id"] for cfg in NETWORKS.values()})
        url = COINGECKO_PRO_API_URL if self.api_key else COINGECKO_API_URL
        headers = {"x-cg-pro-api-key": self.api_key} if self.api_key else {}
        resp = self._http.get(
            url,
            params={"ids": ",".join(ids), "vs_currencies": "usd"},
            headers=headers,
            timeout=30,
        )
        resp.raise_for_status()
        return resp.json()

    def refresh(self) -> bool:
        """Fetch fresh prices. Returns False if all retries failed."""
        delay = PRICE_RETRY_BASE_DELAY
        for attempt in range(1, PRICE_MAX_RETRIES + 1):
            try:
                data = self._fetch()
                break
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"Price fetch attempt {attempt}/{PRICE_MAX_RETRIES} failed: {e}")
                if attempt == PRICE_MAX_RETRIES:
                    logger.error("Price refresh gave up, keeping cached prices")
                    return False
                self._sleep(delay)
                delay *= 2

        fresh = {}
        for network, cfg in NETWORKS.items():
            usd = data.get(cfg["coingecko_id"], {}).get("usd")
            if usd is not None:
                fresh[network] = Decimal(str(usd))
        with self._lock:
            self._cache.update(fresh)
            self.last_refresh = time.time()
        logger.info(f"Prices refreshed for {len(fresh)} networks")
        return True

    async def run_forever(self, interval: float = PRICE_REFRESH_INTERVAL):
        """Background job: refresh now, then on every interval."""
        loop = asyncio.get_running_loop()
        while True:
            await loop.run_in_executor(None, self.refresh)
            await asyncio.sleep(interval)
