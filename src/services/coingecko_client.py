from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

COINGECKO_SYMBOL_OVERRIDES: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "BNB": "binancecoin",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DOT": "polkadot",
    "MATIC": "matic-network",
}


class CoinGeckoAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def resolve_coingecko_id(symbol: str) -> str:
    normalized = symbol.strip().upper()
    return COINGECKO_SYMBOL_OVERRIDES.get(normalized, normalized.lower())


class CoinGeckoClient:
    """Minimal CoinGecko API client covering the simple spot price endpoint."""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 5,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist={429, 502, 503},
            allowed_methods={"GET"},
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_simple_prices(self, coin_ids: Iterable[str], vs_currency: str) -> dict[str, Decimal]:
        """Return ``{coin_id: price}``; coins CoinGecko does not know are left out."""
        ids = sorted({coin_id for coin_id in coin_ids if coin_id})
        if not ids:
            return {}
        if not vs_currency:
            raise ValueError("vs_currency must be provided")

        currency = vs_currency.lower()
        payload = self._request("GET", "/simple/price", params={"ids": ",".join(ids), "vs_currencies": currency})

        prices: dict[str, Decimal] = {}
        for coin_id, quotes in payload.items():
            if not isinstance(quotes, dict) or currency not in quotes:
                continue
            price = self._to_decimal(quotes[currency])
            if price is None:
                raise CoinGeckoAPIError(f"CoinGecko returned non-numeric price for {coin_id}", payload=payload)
            prices[coin_id] = price
        return prices

    def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload_err = self._extract_error(resp)
            raise CoinGeckoAPIError(message, status_code=resp.status_code, payload=payload_err) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise CoinGeckoAPIError("CoinGecko API request failed", status_code=status_code) from exc

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as exc:
            raise CoinGeckoAPIError("CoinGecko API returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload, dict):
            raise CoinGeckoAPIError("CoinGecko API returned unexpected payload type", payload=payload)

        return payload

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    @staticmethod
    def _extract_error(response: Response) -> tuple[str, Any]:
        message = "CoinGecko API request failed"
        try:
            payload = response.json()
            status = payload.get("status") if isinstance(payload, dict) else None
            if isinstance(status, dict) and status.get("error_message"):
                message = status["error_message"]
            elif isinstance(payload, dict) and payload.get("error"):
                message = str(payload["error"])
        except ValueError:
            payload = response.text
        return message, payload


__all__ = ["CoinGeckoAPIError", "CoinGeckoClient", "resolve_coingecko_id"]
